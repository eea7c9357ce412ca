# ---------------------------
# sandbox_analyst/agent/loop.py
# ---------------------------
"""
The orchestration loop: one analysis run from dataset + instruction to a
narrative backed by charts.

    INIT ──► SANDBOX_READY ──► model ──┬──► tools ──► model ...
                                       └──► review ─┬──► model ...   (quota unmet, rounds left)
                                                    └──► END         (quota met or last round)

INIT checks credentials. SANDBOX_READY creates a sandbox (raced against a local
timeout) and uploads the dataset. The round loop is a LangGraph StateGraph:

- `model` makes exactly one completion call per round.
- `tools` executes the requested calls strictly in order, one at a time, since
  later calls may read variables set by earlier ones. Bad arguments, unknown
  tool names and code that raises all come back as error tool results.
- `review` handles a free-text answer. If fewer charts than the quota exist and
  rounds remain, the draft is pushed back followed by a corrective user message
  naming how many charts are still missing; otherwise the text is the narrative.

The sandbox is destroyed exactly once on every exit path after creation.
"""

import json
import logging
import operator
from typing import Iterable, List, Optional, Sequence

from typing_extensions import Annotated, TypedDict
from pydantic import ValidationError
from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langgraph.graph import StateGraph, START, END

from ..artifacts import ArtifactAccumulator
from ..config import Config
from ..errors import (
    ArgumentParseError,
    CompletionServiceError,
    ConfigurationError,
    RecoverableToolError,
    SandboxCreationError,
    ToolExecutionError,
    UnknownToolError,
)
from ..models import AgentRunResult, Message, Role, SandboxHandle, ToolCall, ToolResult
from ..responses import extract_text
from ..sandbox.client import SandboxClient
from .prompt import (
    EMPTY_DRAFT,
    FALLBACK_NARRATIVE,
    QuotaPolicy,
    external_context_message,
    system_prompt,
)
from .tools import RUN_PYTHON, RunPythonInput, make_run_python_tool

logger = logging.getLogger(__name__)


class LoopState(TypedDict, total=False):
    transcript: Annotated[List[BaseMessage], operator.add]  # exchanges after the base prompt
    round: int                       # completion calls made so far
    reply: Optional[AIMessage]       # latest completion
    draft: str                       # last free-text answer pushed back for more work
    narrative: Optional[str]         # set once an answer is accepted


# ---------- helpers ----------

def to_langchain(history: Iterable[Message]) -> List[BaseMessage]:
    """Convert stored conversation turns into LangChain messages."""
    converted: List[BaseMessage] = []
    for m in history:
        if m.role == Role.USER:
            converted.append(HumanMessage(content=m.content))
        elif m.role == Role.ASSISTANT:
            converted.append(AIMessage(content=m.content))
        elif m.role == Role.SYSTEM:
            converted.append(SystemMessage(content=m.content))
        elif m.tool_call_id:
            converted.append(ToolMessage(content=m.content, tool_call_id=m.tool_call_id))
        else:
            logger.debug("Dropping tool message without a call id from history")
    return converted


def requested_calls(reply: AIMessage) -> List[ToolCall]:
    """
    Tool invocations in the order the model sent them.

    The provider's raw list keeps the order as sent and the unparsed argument
    strings; without it, fall back to LangChain's parsed and invalid calls.
    """
    raw = (reply.additional_kwargs or {}).get("tool_calls")
    if raw:
        calls = []
        for i, c in enumerate(raw):
            fn = c.get("function") or {}
            calls.append(ToolCall(
                name=fn.get("name") or "",
                arguments=fn.get("arguments"),
                correlation_id=c.get("id") or f"call_{i}",
            ))
        return calls

    parsed = [(tc["name"], tc.get("args"), tc.get("id")) for tc in reply.tool_calls]
    invalid = [(tc.get("name") or "", tc.get("args"), tc.get("id")) for tc in reply.invalid_tool_calls]
    return [
        ToolCall(name=name, arguments=args, correlation_id=call_id or f"call_{i}")
        for i, (name, args, call_id) in enumerate(parsed + invalid)
    ]


def parse_arguments(call: ToolCall) -> RunPythonInput:
    args = call.arguments
    if args is None or args == "":
        args = {}
    if isinstance(args, str):
        try:
            args = json.loads(args)
        except json.JSONDecodeError as e:
            raise ArgumentParseError(f"Arguments for {call.name} are not valid JSON: {e}") from e
    if not isinstance(args, dict):
        raise ArgumentParseError(f"Arguments for {call.name} must be a JSON object")
    try:
        return RunPythonInput.model_validate(args)
    except ValidationError as e:
        problems = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        raise ArgumentParseError(f"Invalid arguments for {call.name}: {problems}") from e


def error_message(call: ToolCall, kind: str, message: str) -> ToolMessage:
    result = ToolResult.failure(kind, message)
    return ToolMessage(
        content=result.to_content(),
        tool_call_id=call.correlation_id,
        name=call.name or None,
        status="error",
    )


# ---------- one run ----------

class _Run:
    """Graph nodes for a single run; holds the run-scoped sandbox and artifacts."""

    def __init__(self, loop: "OrchestrationLoop", model, handle: SandboxHandle, base: List[BaseMessage]):
        self.cfg = loop.cfg
        self.policy = loop.policy
        self.base = base
        self.artifacts = ArtifactAccumulator()
        self.current_round = 0
        self.tool = make_run_python_tool(
            sandbox=loop.sandbox,
            handle=handle,
            artifacts=self.artifacts,
            round_fn=lambda: self.current_round,
            dataset_path=self.cfg.dataset_path,
            preview_chars=self.cfg.output_preview_chars,
            timeout_s=self.cfg.sandbox_exec_timeout_s,
        )
        self.model = model.bind_tools([self.tool], tool_choice="auto")

    # -- nodes --

    async def call_model(self, state: LoopState) -> dict:
        n = state["round"] + 1
        messages = self.base + state["transcript"]
        logger.info("LLM round %d/%d (%d messages)", n, self.cfg.max_rounds, len(messages))
        try:
            reply = await self.model.ainvoke(messages)
        except Exception as e:
            raise CompletionServiceError(f"Completion call failed in round {n}: {e}") from e
        return {"round": n, "reply": reply}

    async def dispatch(self, call: ToolCall) -> ToolMessage:
        try:
            if call.name != RUN_PYTHON:
                raise UnknownToolError(f"Unknown tool: {call.name or '<missing name>'}")
            args = parse_arguments(call)
        except RecoverableToolError as e:
            logger.warning("Rejected call %s: %s", call.correlation_id, e)
            return error_message(call, e.kind, str(e))

        try:
            return await self.tool.ainvoke(
                {"name": RUN_PYTHON, "args": args.model_dump(), "id": call.correlation_id, "type": "tool_call"}
            )
        except Exception as e:
            logger.exception("Tool call %s failed unexpectedly", call.correlation_id)
            return error_message(call, ToolExecutionError.kind, str(e))

    async def run_tools(self, state: LoopState) -> dict:
        self.current_round = state["round"]
        reply = state["reply"]
        calls = requested_calls(reply)
        logger.info("Round %d: %d tool call(s)", self.current_round, len(calls))
        messages: List[BaseMessage] = [reply]
        for call in calls:  # sequential on purpose: calls share sandbox state
            messages.append(await self.dispatch(call))
        return {"transcript": messages}

    def review(self, state: LoopState) -> dict:
        n = state["round"]
        text = extract_text(state["reply"])
        produced = len(self.artifacts)
        remaining = self.policy.remaining(produced)

        if remaining > 0 and n < self.cfg.max_rounds:
            logger.warning(
                "Answer in round %d with %d/%d charts; asking for %d more",
                n, produced, self.policy.quota, remaining,
            )
            return {
                "transcript": [
                    AIMessage(content=text or EMPTY_DRAFT),
                    HumanMessage(content=self.policy.correction(remaining)),
                ],
                "draft": text or state.get("draft", ""),
            }

        if remaining > 0:
            logger.warning("Round limit reached with %d/%d charts; accepting answer", produced, self.policy.quota)
        logger.info("Accepted final answer in round %d (%d chars)", n, len(text))
        return {"narrative": text or state.get("draft", "")}

    # -- edges --

    def after_model(self, state: LoopState) -> str:
        return "tools" if requested_calls(state["reply"]) else "review"

    def after_tools(self, state: LoopState) -> str:
        return "model" if state["round"] < self.cfg.max_rounds else END

    def after_review(self, state: LoopState) -> str:
        return END if state.get("narrative") is not None else "model"

    def build_graph(self):
        builder = StateGraph(LoopState)
        builder.add_node("model", self.call_model)
        builder.add_node("tools", self.run_tools)
        builder.add_node("review", self.review)
        builder.add_edge(START, "model")
        builder.add_conditional_edges("model", self.after_model, {"tools": "tools", "review": "review"})
        builder.add_conditional_edges("tools", self.after_tools, {"model": "model", END: END})
        builder.add_conditional_edges("review", self.after_review, {"model": "model", END: END})
        return builder.compile()


class OrchestrationLoop:
    """
    Drives one analysis run per `run()` call. Instances are reusable and keep no
    per-run state, so concurrent runs for different users are independent.

    Args:
        cfg: loaded Config (credentials, quota, MAX_ROUNDS, timeouts).
        sandbox: SandboxClient; defaults to a Docker-backed client.
        chat_model: LangChain chat model supporting bind_tools(); defaults to
            ChatOpenAI built from cfg, with the SDK's bounded retries.
        policy: quota and corrective wording; defaults to cfg.artifact_quota.
    """

    def __init__(
        self,
        cfg: Config,
        sandbox: Optional[SandboxClient] = None,
        chat_model=None,
        policy: Optional[QuotaPolicy] = None,
    ):
        self.cfg = cfg
        self.sandbox = sandbox or SandboxClient(cfg)
        self._chat_model = chat_model
        self.policy = policy or QuotaPolicy(quota=cfg.artifact_quota, tool_name=RUN_PYTHON)

    def _model(self):
        if self._chat_model is None:
            from langchain_openai import ChatOpenAI

            self._chat_model = ChatOpenAI(
                model=self.cfg.openai_model,
                api_key=self.cfg.openai_api_key,
                max_retries=self.cfg.completion_max_retries,
                timeout=self.cfg.completion_timeout_s,
            )
        return self._chat_model

    def build_transcript(
        self,
        instruction: str,
        history: Sequence[Message] = (),
        external_context: Optional[str] = None,
    ) -> List[BaseMessage]:
        messages: List[BaseMessage] = [
            SystemMessage(content=system_prompt(self.cfg.dataset_path, RUN_PYTHON, self.policy.quota))
        ]
        if external_context:
            messages.append(SystemMessage(content=external_context_message(external_context)))
        messages.extend(to_langchain(history))
        messages.append(HumanMessage(content=instruction))
        return messages

    async def run(
        self,
        dataset: bytes,
        instruction: str,
        history: Sequence[Message] = (),
        external_context: Optional[str] = None,
    ) -> AgentRunResult:
        """
        Run the analysis to completion.

        Raises:
            ConfigurationError: a required credential is missing (nothing created).
            SandboxTimeoutError: sandbox creation lost the race against the local timeout.
            SandboxCreationError: the sandbox could not be created or the dataset not uploaded.
            CompletionServiceError: the completion service failed after its retries.
        """
        # INIT
        missing = self.cfg.missing_credentials()
        if missing:
            raise ConfigurationError(f"Missing required credential(s): {', '.join(missing)}")
        model = self._model()

        # SANDBOX_READY
        logger.info("Starting analysis run (quota=%d, max_rounds=%d)", self.policy.quota, self.cfg.max_rounds)
        handle = await self.sandbox.create(self.cfg.sandbox_create_timeout_s)
        try:
            try:
                await self.sandbox.write_file(handle, self.cfg.dataset_path, dataset)
            except Exception as e:
                raise SandboxCreationError("Could not upload dataset to sandbox", detail=str(e)) from e

            run = _Run(self, model, handle, self.build_transcript(instruction, history, external_context))
            final = await run.build_graph().ainvoke(
                {"transcript": [], "round": 0, "draft": "", "narrative": None},
                {"recursion_limit": 2 * self.cfg.max_rounds + 5},
            )
        finally:
            await self.sandbox.destroy(handle)

        # TERMINAL(success)
        narrative = final.get("narrative")
        if narrative is None:
            narrative = final.get("draft") or ""
        if len(narrative.strip()) < self.cfg.min_narrative_chars:
            logger.warning("Final narrative was empty or too short (%d chars); using fallback", len(narrative.strip()))
            narrative = FALLBACK_NARRATIVE

        artifacts = run.artifacts.snapshot()
        logger.info("Run finished: %d round(s), %d chart(s)", final["round"], len(artifacts))
        return AgentRunResult(
            narrative=narrative,
            artifacts=artifacts,
            external_context=external_context or None,
            round_count=final["round"],
        )
