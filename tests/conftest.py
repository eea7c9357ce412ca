# tests/conftest.py
"""Shared fakes: a scripted chat model and an in-memory sandbox."""

import itertools
from typing import Callable, List, Optional

import pytest
from langchain_core.messages import AIMessage

from sandbox_analyst.config import Config
from sandbox_analyst.models import ExecutionError, ExecutionResult, SandboxHandle

PNG = b"\x89PNG\r\n\x1a\nfake"
_ids = itertools.count(1)


def default_exec(code: str) -> ExecutionResult:
    """Each plt.show() yields one chart; `raise` in the code yields an error."""
    if "raise" in code:
        return ExecutionResult(
            stdout="",
            error=ExecutionError(name="ParserError", value="Error tokenizing data", traceback="Traceback...\nParserError"),
        )
    return ExecutionResult(stdout=f"ran {len(code)} chars\n", images=[PNG] * code.count("plt.show()"))


class FakeSandbox:
    def __init__(self, on_exec: Callable[[str], ExecutionResult] = default_exec, create_error: Optional[Exception] = None,
                 write_error: Optional[Exception] = None):
        self.on_exec = on_exec
        self.create_error = create_error
        self.write_error = write_error
        self.events: List[tuple] = []
        self.executed: List[str] = []
        self.handle = SandboxHandle(id="sbx1", container_id="c1", base_url="http://sbx", token="tok")

    async def create(self, timeout_s=None, **kwargs):
        self.events.append(("create", timeout_s))
        if self.create_error:
            raise self.create_error
        return self.handle

    async def write_file(self, handle, path, data):
        self.events.append(("write_file", path, data))
        if self.write_error:
            raise self.write_error

    async def execute_code(self, handle, code, timeout_s=None):
        self.events.append(("execute_code", code))
        self.executed.append(code)
        return self.on_exec(code)

    async def destroy(self, handle):
        self.events.append(("destroy", handle.id))

    @property
    def destroy_count(self) -> int:
        return sum(1 for e in self.events if e[0] == "destroy")


class ScriptedChatModel:
    """Returns the scripted replies in order and records every transcript it is sent."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.transcripts: List[list] = []
        self.bound_tools = None
        self.bind_kwargs = None

    def bind_tools(self, tools, **kwargs):
        self.bound_tools = tools
        self.bind_kwargs = kwargs
        return self

    async def ainvoke(self, messages, config=None, **kwargs):
        self.transcripts.append(list(messages))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    @property
    def calls(self) -> int:
        return len(self.transcripts)


def code_call(*codes: str, ids=None, reasoning: str = "analysis step") -> AIMessage:
    ids = ids or [f"call_{next(_ids)}" for _ in codes]
    return AIMessage(
        content="",
        tool_calls=[
            {"name": "run_python", "args": {"code": c, "reasoning": reasoning}, "id": i}
            for c, i in zip(codes, ids)
        ],
    )


def text(content: str) -> AIMessage:
    return AIMessage(content=content)


LONG_REPORT = (
    "Key KPIs: revenue grew 12% quarter over quarter, the north region leads with 41% of sales. "
    "Chart 1 shows the trend, Chart 2 the distribution and Chart 3 the regional split."
)


@pytest.fixture
def cfg():
    return Config(
        openai_api_key="sk-test",
        sandbox_api_key="sbx-token",
        artifact_quota=3,
        max_rounds=10,
    )


@pytest.fixture
def sandbox():
    return FakeSandbox()

