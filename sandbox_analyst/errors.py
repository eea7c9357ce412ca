# sandbox_analyst/errors.py
"""
Error taxonomy for an analysis run.

Two families:
- AnalysisAbortedError: the run cannot continue. The loop releases the sandbox
  (if one was created) and re-raises; the service turns these into a notice.
- RecoverableToolError: a single tool call failed. The loop folds it back into
  the transcript as a structured tool result and keeps going.
"""


class AnalysisAbortedError(Exception):
    """Base class for failures that abort a run."""


class ConfigurationError(AnalysisAbortedError):
    """A required credential or setting is missing or invalid."""


class SandboxTimeoutError(AnalysisAbortedError):
    """Sandbox creation did not finish before the local timeout."""


class SandboxCreationError(AnalysisAbortedError):
    """The sandbox provider refused or failed to create a usable sandbox."""

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message)
        self.detail = detail


class CompletionServiceError(AnalysisAbortedError):
    """The completion service kept failing after the client's own retries."""


class RecoverableToolError(Exception):
    """Base class for per-call failures reported back to the model."""

    kind = "ToolError"


class ToolExecutionError(RecoverableToolError):
    kind = "ToolExecutionError"


class UnknownToolError(RecoverableToolError):
    kind = "UnknownToolError"


class ArgumentParseError(RecoverableToolError):
    kind = "ArgumentParseError"
