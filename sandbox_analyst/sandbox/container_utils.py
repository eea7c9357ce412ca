# sandbox_analyst/sandbox/container_utils.py
"""
Housekeeping for sandbox containers left behind by crashed or killed processes.

Every sandbox (analysis REPL or research bridge) is named `sbx-<id>`, so the
name prefix is enough to find them.
"""

import logging
from typing import List

import docker

logger = logging.getLogger(__name__)

SANDBOX_PREFIX = "sbx-"


def _matching(client, container_prefix: str, include_stopped: bool):
    return client.containers.list(all=include_stopped, filters={"name": container_prefix})


def cleanup_sandbox_containers(container_prefix: str = SANDBOX_PREFIX, client=None) -> List[str]:
    """
    Force-remove every container whose name matches `container_prefix`.

    Meant for process startup: it does not know which sandboxes belong to live
    runs elsewhere.

    Returns the names that were removed. Raises docker.errors.DockerException
    if the daemon cannot be reached.
    """
    client = client or docker.from_env()
    leftovers = _matching(client, container_prefix, include_stopped=True)
    if leftovers:
        logger.info("Removing %d leftover sandbox container(s)", len(leftovers))

    removed = []
    for c in leftovers:
        try:
            c.remove(force=True)
        except docker.errors.NotFound:
            continue  # removed concurrently
        except docker.errors.APIError as e:
            logger.warning("Could not remove %s: %s", c.name, e)
            continue
        removed.append(c.name)
        logger.debug("Removed %s", c.name)
    return removed


def list_sandbox_containers(container_prefix: str = SANDBOX_PREFIX, running_only: bool = False, client=None) -> List[str]:
    """Names of sandbox containers; an unreachable daemon yields an empty list."""
    try:
        client = client or docker.from_env()
        return [c.name for c in _matching(client, container_prefix, include_stopped=not running_only)]
    except docker.errors.DockerException as e:
        logger.warning("Could not list sandbox containers: %s", e)
        return []
