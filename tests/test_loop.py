# tests/test_loop.py
import json

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from sandbox_analyst.agent.loop import OrchestrationLoop, parse_arguments, requested_calls
from sandbox_analyst.agent.prompt import FALLBACK_NARRATIVE
from sandbox_analyst.errors import (
    ArgumentParseError,
    CompletionServiceError,
    ConfigurationError,
    SandboxCreationError,
    SandboxTimeoutError,
)
from sandbox_analyst.config import Config
from sandbox_analyst.models import Message, Role, ToolCall

from conftest import LONG_REPORT, FakeSandbox, ScriptedChatModel, code_call, text

DATA = b"region,sales\nnorth,10\nsouth,12\n"


def corrections(transcript):
    return [m for m in transcript if isinstance(m, HumanMessage) and "additional visualizations" in m.content]


def tool_payloads(transcript):
    return [json.loads(m.content) for m in transcript if isinstance(m, ToolMessage)]


# ---------- quota correction ----------

@pytest.mark.asyncio
async def test_quota_correction_then_success(cfg, sandbox):
    model = ScriptedChatModel([
        code_call("df = load(); plt.show()"),                  # round 1: 1 chart
        text("Early summary without enough charts."),          # round 2: 1 < 3 -> correction
        code_call("plt.show()", "plt.show()"),                 # round 3: +2 charts
        text(LONG_REPORT),                                     # round 4: quota met
    ])
    result = await OrchestrationLoop(cfg, sandbox=sandbox, chat_model=model).run(DATA, "Analyse sales")

    assert result.narrative == LONG_REPORT
    assert result.artifact_count == 3
    assert result.round_count == 4
    assert [a.producing_round for a in result.artifacts] == [1, 3, 3]
    assert model.calls == 4

    # round 3's transcript carries the pushed-back draft and the correction for exactly 2 more
    round3 = model.transcripts[2]
    assert isinstance(round3[-2], AIMessage) and round3[-2].content == "Early summary without enough charts."
    (correction,) = corrections(round3)
    assert round3[-1] is correction
    assert "at least 2 additional" in correction.content
    assert sandbox.destroy_count == 1


@pytest.mark.asyncio
async def test_correction_count_tracks_remaining(cfg, sandbox):
    model = ScriptedChatModel([
        text("nothing yet"),                      # 0 charts -> 3 missing
        code_call("plt.show()\nplt.show()"),      # 2 charts
        text("still short"),                      # 1 missing
        code_call("plt.show()"),
        text(LONG_REPORT),
    ])
    result = await OrchestrationLoop(cfg, sandbox=sandbox, chat_model=model).run(DATA, "go")

    assert "at least 3 additional" in corrections(model.transcripts[1])[0].content
    assert "at least 1 additional" in corrections(model.transcripts[3])[-1].content
    assert result.artifact_count == 3


@pytest.mark.asyncio
async def test_empty_draft_gets_placeholder(cfg, sandbox):
    model = ScriptedChatModel([text(""), code_call("plt.show()\nplt.show()\nplt.show()"), text(LONG_REPORT)])
    await OrchestrationLoop(cfg, sandbox=sandbox, chat_model=model).run(DATA, "go")
    pushed_back = model.transcripts[1][-2]
    assert isinstance(pushed_back, AIMessage) and pushed_back.content == "(partial summary)"


# ---------- code errors and round limit ----------

@pytest.mark.asyncio
async def test_code_errors_are_fed_back_and_round_limit_ends_run(sandbox):
    cfg = Config(openai_api_key="k", sandbox_api_key="s", max_rounds=3)
    model = ScriptedChatModel([code_call("raise parse")] * 3)

    result = await OrchestrationLoop(cfg, sandbox=sandbox, chat_model=model).run(b"", "go")

    assert model.calls == 3
    assert result.round_count == 3
    assert result.artifact_count == 0
    assert result.narrative == FALLBACK_NARRATIVE
    payloads = tool_payloads(model.transcripts[-1])
    assert payloads and all(p["error"]["kind"] == "ToolExecutionError" for p in payloads)
    assert sandbox.destroy_count == 1


@pytest.mark.asyncio
async def test_last_round_text_is_accepted_without_quota(sandbox):
    cfg = Config(openai_api_key="k", sandbox_api_key="s", max_rounds=2)
    model = ScriptedChatModel([code_call("plt.show()"), text(LONG_REPORT)])

    result = await OrchestrationLoop(cfg, sandbox=sandbox, chat_model=model).run(DATA, "go")

    assert result.narrative == LONG_REPORT
    assert result.artifact_count == 1
    assert corrections(model.transcripts[-1]) == []


@pytest.mark.asyncio
async def test_round_limit_returns_last_draft(sandbox):
    cfg = Config(openai_api_key="k", sandbox_api_key="s", max_rounds=2)
    draft = "A partial report that is certainly longer than fifty characters in total."
    model = ScriptedChatModel([text(draft), code_call("print(1)")])

    result = await OrchestrationLoop(cfg, sandbox=sandbox, chat_model=model).run(DATA, "go")
    assert result.narrative == draft


@pytest.mark.asyncio
async def test_short_narrative_replaced_by_fallback(sandbox):
    cfg = Config(openai_api_key="k", sandbox_api_key="s", artifact_quota=0)
    model = ScriptedChatModel([text("Done.")])
    result = await OrchestrationLoop(cfg, sandbox=sandbox, chat_model=model).run(DATA, "go")
    assert result.narrative == FALLBACK_NARRATIVE


@pytest.mark.parametrize("max_rounds", [1, 4, 10])
@pytest.mark.asyncio
async def test_never_more_completion_calls_than_max_rounds(max_rounds, sandbox):
    cfg = Config(openai_api_key="k", sandbox_api_key="s", max_rounds=max_rounds)
    model = ScriptedChatModel([text("not enough charts"), code_call("print(1)")] * 10)

    await OrchestrationLoop(cfg, sandbox=sandbox, chat_model=model).run(DATA, "go")
    assert model.calls == max_rounds


# ---------- tool dispatch ----------

@pytest.mark.asyncio
async def test_unknown_tool_is_recovered(cfg, sandbox):
    bad = AIMessage(content="", tool_calls=[{"name": "delete_everything", "args": {}, "id": "call_x"}])
    model = ScriptedChatModel([bad, code_call("plt.show()\nplt.show()\nplt.show()"), text(LONG_REPORT)])

    result = await OrchestrationLoop(cfg, sandbox=sandbox, chat_model=model).run(DATA, "go")

    (payload,) = tool_payloads(model.transcripts[1])
    assert payload["status"] == "error"
    assert payload["error"]["kind"] == "UnknownToolError"
    assert result.artifact_count == 3
    assert sandbox.executed == ["plt.show()\nplt.show()\nplt.show()"]


@pytest.mark.asyncio
async def test_malformed_arguments_are_recovered_in_order(cfg, sandbox):
    reply = AIMessage(
        content="",
        additional_kwargs={"tool_calls": [
            {"id": "c1", "type": "function", "function": {"name": "run_python", "arguments": "{\"code\": \"a = 1\", \"reasoning\": \"set\"}"}},
            {"id": "c2", "type": "function", "function": {"name": "run_python", "arguments": "{not json"}},
            {"id": "c3", "type": "function", "function": {"name": "run_python", "arguments": "{\"code\": \"print(a)\"}"}},
            {"id": "c4", "type": "function", "function": {"name": "run_python", "arguments": "{\"code\": \"plt.show()\", \"reasoning\": \"chart\"}"}},
        ]},
    )
    model = ScriptedChatModel([reply, text(LONG_REPORT)])
    cfg = Config(openai_api_key="k", sandbox_api_key="s", artifact_quota=1)

    result = await OrchestrationLoop(cfg, sandbox=sandbox, chat_model=model).run(DATA, "go")

    tool_msgs = [m for m in model.transcripts[1] if isinstance(m, ToolMessage)]
    assert [m.tool_call_id for m in tool_msgs] == ["c1", "c2", "c3", "c4"]
    kinds = [json.loads(m.content).get("error", {}).get("kind") for m in tool_msgs]
    assert kinds == [None, "ArgumentParseError", "ArgumentParseError", None]
    assert sandbox.executed == ["a = 1", "plt.show()"]
    assert result.artifact_count == 1


@pytest.mark.asyncio
async def test_calls_in_one_round_run_sequentially(cfg, sandbox):
    model = ScriptedChatModel([code_call("x = 1", "y = x + 1", "plt.show()"), text(LONG_REPORT)])
    cfg = Config(openai_api_key="k", sandbox_api_key="s", artifact_quota=1)

    await OrchestrationLoop(cfg, sandbox=sandbox, chat_model=model).run(DATA, "go")

    assert sandbox.executed == ["x = 1", "y = x + 1", "plt.show()"]
    round2 = model.transcripts[1]
    # assistant turn with the calls, then one tool message per call
    idx = next(i for i, m in enumerate(round2) if isinstance(m, AIMessage) and m.tool_calls)
    assert [type(m) for m in round2[idx:]] == [AIMessage, ToolMessage, ToolMessage, ToolMessage]


def test_parse_arguments_variants():
    ok = parse_arguments(ToolCall("run_python", "{\"code\": \"1\", \"reasoning\": \"r\"}", "c"))
    assert ok.code == "1"
    assert parse_arguments(ToolCall("run_python", {"code": "2", "reasoning": "r"}, "c")).code == "2"
    for bad in ["[1, 2]", "{\"reasoning\": \"no code\"}", None, "{oops"]:
        with pytest.raises(ArgumentParseError):
            parse_arguments(ToolCall("run_python", bad, "c"))


def test_requested_calls_includes_invalid_calls():
    reply = AIMessage(
        content="",
        tool_calls=[{"name": "run_python", "args": {"code": "1", "reasoning": "r"}, "id": "a"}],
        invalid_tool_calls=[{"name": "run_python", "args": "{broken", "id": "b", "error": "bad json"}],
    )
    calls = requested_calls(reply)
    assert [c.correlation_id for c in calls] == ["a", "b"]
    assert calls[1].arguments == "{broken"


def test_requested_calls_number_missing_ids_by_position():
    reply = AIMessage(
        content="",
        tool_calls=[{"name": "run_python", "args": {"code": "1", "reasoning": "r"}, "id": None}],
        invalid_tool_calls=[{"name": None, "args": "{broken", "id": None, "error": "bad json"}],
    )
    calls = requested_calls(reply)
    assert [c.correlation_id for c in calls] == ["call_0", "call_1"]
    assert [c.name for c in calls] == ["run_python", ""]


# ---------- transcript ----------

@pytest.mark.asyncio
async def test_transcript_layout(cfg, sandbox):
    history = [
        Message(Role.USER, "Uploaded dataset"),
        Message(Role.ASSISTANT, "Earlier report"),
        Message(Role.TOOL, "orphan tool output"),
    ]
    model = ScriptedChatModel([code_call("plt.show()\nplt.show()\nplt.show()"), text(LONG_REPORT)])

    result = await OrchestrationLoop(cfg, sandbox=sandbox, chat_model=model).run(
        DATA, "Compare regions", history, external_context="Benchmark: 10% growth"
    )

    first = model.transcripts[0]
    assert isinstance(first[0], SystemMessage) and "/session/data.csv" in first[0].content
    assert isinstance(first[1], SystemMessage) and "Benchmark: 10% growth" in first[1].content
    assert [m.content for m in first[2:]] == ["Uploaded dataset", "Earlier report", "Compare regions"]
    assert result.external_context == "Benchmark: 10% growth"
    assert [t.name for t in model.bound_tools] == ["run_python"]


@pytest.mark.asyncio
async def test_dataset_uploaded_before_first_round(cfg, sandbox):
    model = ScriptedChatModel([code_call("plt.show()\nplt.show()\nplt.show()"), text(LONG_REPORT)])
    await OrchestrationLoop(cfg, sandbox=sandbox, chat_model=model).run(DATA, "go")

    kinds = [e[0] for e in sandbox.events]
    assert kinds[:2] == ["create", "write_file"]
    assert sandbox.events[1][1:] == ("/session/data.csv", DATA)
    assert kinds[-1] == "destroy"


# ---------- fatal paths ----------

@pytest.mark.asyncio
async def test_missing_credentials_fail_before_any_sandbox(sandbox):
    model = ScriptedChatModel([])
    loop = OrchestrationLoop(Config(openai_api_key="k"), sandbox=sandbox, chat_model=model)

    with pytest.raises(ConfigurationError, match="SANDBOX_API_KEY"):
        await loop.run(DATA, "go")
    assert sandbox.events == []


@pytest.mark.asyncio
async def test_creation_timeout_means_no_destroy(cfg):
    sandbox = FakeSandbox(create_error=SandboxTimeoutError("timed out"))
    with pytest.raises(SandboxTimeoutError):
        await OrchestrationLoop(cfg, sandbox=sandbox, chat_model=ScriptedChatModel([])).run(DATA, "go")
    assert sandbox.destroy_count == 0


@pytest.mark.asyncio
async def test_upload_failure_destroys_sandbox(cfg):
    sandbox = FakeSandbox(write_error=RuntimeError("put_archive failed"))
    with pytest.raises(SandboxCreationError) as ei:
        await OrchestrationLoop(cfg, sandbox=sandbox, chat_model=ScriptedChatModel([])).run(DATA, "go")
    assert "put_archive failed" in ei.value.detail
    assert sandbox.destroy_count == 1


@pytest.mark.asyncio
async def test_completion_failure_destroys_sandbox(cfg, sandbox):
    model = ScriptedChatModel([code_call("plt.show()"), RuntimeError("429 rate limited")])
    with pytest.raises(CompletionServiceError, match="round 2"):
        await OrchestrationLoop(cfg, sandbox=sandbox, chat_model=model).run(DATA, "go")
    assert sandbox.destroy_count == 1


@pytest.mark.asyncio
async def test_loop_instance_is_reusable(cfg):
    sandbox = FakeSandbox()
    model = ScriptedChatModel([text(LONG_REPORT), text(LONG_REPORT)])
    loop = OrchestrationLoop(Config(openai_api_key="k", sandbox_api_key="s", artifact_quota=0),
                             sandbox=sandbox, chat_model=model)
    first = await loop.run(DATA, "one")
    second = await loop.run(DATA, "two")
    assert first.round_count == second.round_count == 1
    assert sandbox.destroy_count == 2
