# sandbox_analyst/sandbox/__init__.py

from .client import SandboxClient, parse_execution
from .container_utils import cleanup_sandbox_containers, list_sandbox_containers

__all__ = [
    "SandboxClient",
    "parse_execution",
    "cleanup_sandbox_containers",
    "list_sandbox_containers",
]
