# sandbox_analyst/agent/tools.py

import logging
from typing import Callable, Optional

import httpx
from pydantic import BaseModel, Field, ConfigDict
from typing_extensions import Annotated
from langchain_core.tools import BaseTool, tool, InjectedToolCallId
from langchain_core.messages import ToolMessage

from ..artifacts import ArtifactAccumulator
from ..errors import ToolExecutionError
from ..models import ExecutionResult, SandboxHandle, ToolResult
from ..sandbox.client import SandboxClient

logger = logging.getLogger(__name__)

RUN_PYTHON = "run_python"


class RunPythonInput(BaseModel):
    """What the model has to send: the only tool contract it is given."""
    code: str = Field(description="The Python code to execute in a single cell.")
    reasoning: str = Field(description="Brief explanation of what this code is trying to do.")


def truncate(text: str, limit: int, *, keep: str = "head") -> str:
    if len(text) <= limit:
        return text
    dropped = len(text) - limit
    if keep == "tail":
        return f"[... {dropped} chars truncated]\n" + text[-limit:]
    return text[:limit] + f"\n[... {dropped} chars truncated]"


def execution_to_result(execution: ExecutionResult, charts: int, preview_chars: int) -> ToolResult:
    stdout = truncate(execution.stdout, preview_chars)
    if execution.ok:
        return ToolResult(status="success", output_preview=stdout, artifacts_produced=charts)

    err = execution.error
    preview = stdout
    if err.traceback:
        preview = (preview + "\n" if preview else "") + truncate(err.traceback, preview_chars, keep="tail")
    return ToolResult.failure(
        ToolExecutionError.kind,
        f"{err.name}: {err.value}",
        output_preview=preview,
        artifacts_produced=charts,
    )


def make_run_python_tool(
    *,
    sandbox: SandboxClient,
    handle: SandboxHandle,
    artifacts: ArtifactAccumulator,
    round_fn: Callable[[], int],
    dataset_path: str,
    preview_chars: int = 2000,
    timeout_s: Optional[int] = None,
    name: str = RUN_PYTHON,
) -> BaseTool:
    """
    Factory that returns a LangChain Tool executing code in one run's sandbox.

    Every image the code renders is appended to `artifacts`, tagged with the
    current round (from `round_fn`) and the tool call id. The tool always
    returns a ToolMessage whose content is a ToolResult JSON payload; a sandbox
    that raises or cannot be reached yields an error result, never an exception.

    Usage:
        run_python = make_run_python_tool(
            sandbox=client, handle=handle, artifacts=acc,
            round_fn=lambda: state["round"], dataset_path="/session/data.csv",
        )
        msg = await run_python.ainvoke({"name": "run_python", "args": {...}, "id": "call_1", "type": "tool_call"})
    """
    description = (
        "Run Python code to analyze the CSV and generate charts.\n"
        f"- The CSV is at '{dataset_path}'.\n"
        "- ALWAYS start by:\n"
        "  import pandas as pd\n"
        f"  df = pd.read_csv('{dataset_path}')\n"
        "- For complex analysis you MAY create a SQLite DB with sqlite3 and df.to_sql('data', conn, if_exists='replace', index=False).\n"
        "- Use matplotlib.pyplot as plt and ALWAYS call plt.show() for charts."
    )

    class ExecuteCodeArgs(RunPythonInput):
        tool_call_id: Annotated[str, InjectedToolCallId]
        model_config = ConfigDict(arbitrary_types_allowed=True)

    async def _impl(
        code: Annotated[str, "Python code to run"],
        reasoning: Annotated[str, "Why this code is being run"],
        tool_call_id: Annotated[str, InjectedToolCallId],
    ) -> ToolMessage:
        current_round = round_fn()
        logger.info("Round %d: running code for call %s (%s)", current_round, tool_call_id, reasoning[:200])

        try:
            execution = await sandbox.execute_code(handle, code, timeout_s)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Sandbox call %s failed: %s", tool_call_id, e)
            result = ToolResult.failure(ToolExecutionError.kind, f"Sandbox call failed: {e}")
            produced = []
        else:
            produced = artifacts.extend(execution.images, current_round, tool_call_id)
            result = execution_to_result(execution, len(produced), preview_chars)

        logger.info(
            "Call %s: status=%s charts=%d (total %d)",
            tool_call_id, result.status, result.artifacts_produced, len(artifacts),
        )
        return ToolMessage(
            content=result.to_content(),
            tool_call_id=tool_call_id,
            name=name,
            artifact=[a.ordinal for a in produced],
            status="success" if result.ok else "error",
        )

    # Return a LangChain Tool by applying the decorator at factory time
    return tool(
        name_or_callable=name,
        description=description,
        args_schema=ExecuteCodeArgs,
    )(_impl)
