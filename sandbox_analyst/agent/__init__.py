# sandbox_analyst/agent/__init__.py

from .loop import OrchestrationLoop
from .prompt import QuotaPolicy
from .tools import RUN_PYTHON, make_run_python_tool

__all__ = [
    "OrchestrationLoop",
    "QuotaPolicy",
    "RUN_PYTHON",
    "make_run_python_tool",
]
