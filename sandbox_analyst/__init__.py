# sandbox_analyst/__init__.py

from .agent import OrchestrationLoop, make_run_python_tool
from .config import Config
from .context_fetcher import ContextFetcher, extract_urls
from .models import AgentRunResult, Artifact, Message, Role, Session
from .service import AnalystService, Intake, TurnOutcome
from .session_store import SessionStore

__all__ = [
    "OrchestrationLoop",
    "make_run_python_tool",
    "Config",
    "ContextFetcher",
    "extract_urls",
    "AgentRunResult",
    "Artifact",
    "Message",
    "Role",
    "Session",
    "AnalystService",
    "Intake",
    "TurnOutcome",
    "SessionStore",
]
