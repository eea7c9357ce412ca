# sandbox_analyst/models.py
from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


@dataclass
class Message:
    """One role-tagged turn. Order in a list defines completion context."""
    role: Role
    content: str
    tool_call_id: Optional[str] = None

    def __post_init__(self):
        self.role = Role(self.role)


@dataclass
class Session:
    """
    Ephemeral per-user conversational state.

    Fields:
    - user_id: identity of the sender (one live session per identity).
    - conversation_history: ordered user/assistant turns.
    - dataset: raw bytes of the last uploaded dataset, if any.
    - last_activity: unix timestamp refreshed on every read or write.
    - analysis_results: summary of the last run (opaque to the store).
    """
    user_id: str
    conversation_history: List[Message] = field(default_factory=list)
    dataset: Optional[bytes] = None
    last_activity: float = field(default_factory=time.time)
    analysis_results: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ToolCall:
    name: str
    arguments: Union[str, Dict[str, Any], None]  # raw JSON or already-parsed args
    correlation_id: str


@dataclass
class ToolResult:
    status: str  # "success" | "error"
    output_preview: str = ""
    error_detail: Optional[Dict[str, str]] = None
    artifacts_produced: int = 0

    @classmethod
    def failure(cls, kind: str, message: str, output_preview: str = "", artifacts_produced: int = 0) -> "ToolResult":
        return cls(
            status="error",
            output_preview=output_preview,
            error_detail={"kind": kind, "message": message},
            artifacts_produced=artifacts_produced,
        )

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_content(self) -> str:
        """JSON payload sent back to the model as the tool message content."""
        payload: Dict[str, Any] = {"status": self.status}
        if self.output_preview:
            payload["output"] = self.output_preview
        if self.error_detail:
            payload["error"] = self.error_detail
        payload["charts_generated"] = self.artifacts_produced
        return json.dumps(payload, ensure_ascii=False)


@dataclass(frozen=True)
class Artifact:
    data: bytes          # PNG bytes
    ordinal: int         # 0-based position in the run
    producing_round: int
    tool_call_id: Optional[str] = None


@dataclass(frozen=True)
class SandboxHandle:
    id: str
    container_id: str
    base_url: str
    token: str
    created_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ExecutionError:
    name: str
    value: str
    traceback: str = ""


@dataclass
class ExecutionResult:
    stdout: str = ""
    images: List[bytes] = field(default_factory=list)
    error: Optional[ExecutionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class AgentRunResult:
    narrative: str
    artifacts: List[Artifact]
    external_context: Optional[str]
    round_count: int

    @property
    def artifact_count(self) -> int:
        return len(self.artifacts)

    def images(self) -> List[bytes]:
        return [a.data for a in self.artifacts]
