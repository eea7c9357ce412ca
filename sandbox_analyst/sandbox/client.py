# ---------------------------
# sandbox_analyst/sandbox/client.py
# ---------------------------

import asyncio
import base64
import logging
import threading
import time
import uuid
from typing import Dict, Optional

import docker            # Host-side Docker SDK (controls containers)
from docker import errors
import httpx             # Lightweight HTTP client to talk to the in-container REPL

from ..config import AddressStrategy, Config
from ..errors import SandboxCreationError, SandboxTimeoutError
from ..models import ExecutionError, ExecutionResult, SandboxHandle
from .container_utils import SANDBOX_PREFIX
from .io import put_bytes

logger = logging.getLogger(__name__)

# Port the in-container REPL listens on.
REPL_PORT = 9000

# Health probing: ~5s worst case, the outer creation timeout still applies.
HEALTH_ATTEMPTS = 50
HEALTH_INTERVAL_S = 0.1


class SandboxClient:
    """
    Lifecycle wrapper around one-shot Docker sandboxes.

    Each `create()` starts a fresh container (never reused across runs) running
    the REPL server, waits until it answers /health and returns a SandboxHandle.
    The caller owns the handle and must `destroy()` it exactly once.

    Docker SDK calls are blocking, so they run in worker threads; REPL calls go
    over httpx.AsyncClient. Creation is raced against a local timeout: whichever
    settles first wins. If the timer wins and the container shows up later, it
    is removed in the background so nothing leaks.
    """

    def __init__(
        self,
        cfg: Config,
        docker_client=None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.cfg = cfg
        self._docker = docker_client
        self._http_transport = http_transport

    @property
    def docker(self):
        if self._docker is None:
            self._docker = docker.from_env()
        return self._docker

    # ---------- creation ----------

    def _base_url(self, container, name: str, service_port: int) -> str:
        if self.cfg.sandbox_address_strategy == AddressStrategy.CONTAINER:
            # Docker network DNS resolves the container name
            return f"http://{name}:{service_port}"
        host_port = int(container.attrs["NetworkSettings"]["Ports"][f"{service_port}/tcp"][0]["HostPort"])
        return f"http://{self.cfg.sandbox_host_gateway}:{host_port}"

    def _wait_healthy(self, url: str) -> bool:
        with httpx.Client(timeout=2.0) as http:
            for _ in range(HEALTH_ATTEMPTS):
                try:
                    if http.get(url).status_code == 200:
                        return True
                except httpx.HTTPError:
                    pass
                time.sleep(HEALTH_INTERVAL_S)
        return False

    def _start_container(
        self,
        sandbox_id: str,
        image: str,
        token: str,
        environment: Dict[str, str],
        service_port: int,
        health_path: Optional[str],
    ) -> SandboxHandle:
        name = f"{SANDBOX_PREFIX}{sandbox_id}"

        if self.cfg.sandbox_address_strategy == AddressStrategy.CONTAINER:
            ports, network = {}, self.cfg.sandbox_network
        else:
            ports, network = {f"{service_port}/tcp": None}, None  # random host port

        try:
            container = self.docker.containers.run(
                image,
                detach=True,
                name=name,
                environment={"SANDBOX_TOKEN": token, **environment},
                ports=ports,
                network=network,
                tmpfs={"/session": f"rw,size={self.cfg.sandbox_tmpfs_size_mb}m,mode=1777"},
                mem_limit="4g",                # tune for your infra/tenancy
                nano_cpus=2_000_000_000,       # ~2 vCPU
                labels={"app": "sandbox-analyst"},
            )
        except Exception as e:  # daemon down, image missing...
            raise SandboxCreationError(f"Could not start sandbox from image {image!r}", detail=str(e)) from e

        try:
            container.reload()
            base_url = self._base_url(container, name, service_port)
        except Exception as e:  # container died at once, port not published...
            self._remove_container(container.id or name)
            raise SandboxCreationError("Sandbox started but its address could not be resolved", detail=str(e)) from e

        handle = SandboxHandle(id=sandbox_id, container_id=container.id or "", base_url=base_url, token=token)

        if health_path and not self._wait_healthy(f"{base_url}{health_path}"):
            self._remove_container(handle.container_id)
            raise SandboxCreationError(
                "Sandbox started but never became healthy",
                detail=f"no 200 from {base_url}{health_path}",
            )
        return handle

    def _reap_late(self, task: "asyncio.Future[SandboxHandle]") -> None:
        """Remove a sandbox that finished starting after we stopped waiting for it."""
        if task.cancelled() or task.exception() is not None:
            return
        handle = task.result()
        logger.warning("Sandbox %s arrived after the local timeout; removing it", handle.id)
        threading.Thread(target=self._remove_container, args=(handle.container_id,), daemon=True).start()

    async def create(
        self,
        timeout_s: Optional[float] = None,
        *,
        image: Optional[str] = None,
        token: Optional[str] = None,
        environment: Optional[Dict[str, str]] = None,
        service_port: int = REPL_PORT,
        health_path: Optional[str] = "/health",
    ) -> SandboxHandle:
        """
        Start a sandbox and wait for it, racing against a local timeout.

        Raises:
            SandboxTimeoutError: the local timeout fired first.
            SandboxCreationError: Docker or the sandbox itself reported a failure.
        """
        timeout_s = self.cfg.sandbox_create_timeout_s if timeout_s is None else timeout_s
        image = image or self.cfg.sandbox_image
        token = token if token is not None else (self.cfg.sandbox_api_key or "")
        sandbox_id = uuid.uuid4().hex[:12]

        logger.info("Requesting sandbox %s (image: %s)", sandbox_id, image)
        started = time.monotonic()
        task = asyncio.ensure_future(asyncio.to_thread(
            self._start_container, sandbox_id, image, token, environment or {}, service_port, health_path,
        ))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout_s)
        except asyncio.CancelledError:
            task.add_done_callback(self._reap_late)
            raise
        if not done:
            task.add_done_callback(self._reap_late)
            raise SandboxTimeoutError(f"Sandbox creation timed out locally ({timeout_s}s)")

        handle = task.result()
        logger.info("Sandbox %s ready in %.1fs", handle.id, time.monotonic() - started)
        return handle

    # ---------- I/O ----------

    def _put(self, handle: SandboxHandle, path: str, data: bytes) -> None:
        container = self.docker.containers.get(handle.container_id)
        put_bytes(container, path, data)

    async def write_file(self, handle: SandboxHandle, path: str, data: bytes) -> None:
        logger.info("Uploading %d bytes to %s:%s", len(data), handle.id, path)
        await asyncio.to_thread(self._put, handle, path, data)

    async def execute_code(self, handle: SandboxHandle, code: str, timeout_s: Optional[int] = None) -> ExecutionResult:
        """
        Run `code` in the sandbox's persistent namespace.

        Returns an ExecutionResult; code that raises is reported through
        `result.error`, not as an exception. Transport failures (connection
        refused, 5xx, bad JSON) do raise httpx errors / ValueError.
        """
        timeout_s = timeout_s or self.cfg.sandbox_exec_timeout_s
        async with httpx.AsyncClient(timeout=timeout_s + 5, transport=self._http_transport) as http:
            r = await http.post(
                f"{handle.base_url}/exec",
                json={"code": code, "timeout": timeout_s},
                headers={"Authorization": f"Bearer {handle.token}"},
            )
            r.raise_for_status()
            payload = r.json()  # {ok, stdout, images, error?}
        return parse_execution(payload)

    # ---------- teardown ----------

    def _remove_container(self, container_id: str) -> None:
        try:
            self.docker.containers.get(container_id).remove(force=True)
        except errors.NotFound:
            pass  # already gone
        except Exception as e:
            logger.warning("Could not remove sandbox container %s: %s", container_id[:12], e)

    async def destroy(self, handle: SandboxHandle) -> None:
        """Force-remove the sandbox. Best effort: failures are logged, not raised."""
        logger.info("Destroying sandbox %s", handle.id)
        await asyncio.to_thread(self._remove_container, handle.container_id)

    def service_url(self, handle: SandboxHandle, path: str = "") -> str:
        """URL of a service inside the sandbox, honouring a public base URL override."""
        base = self.cfg.research_bridge_public_url or handle.base_url
        return f"{base.rstrip('/')}{path}"


def parse_execution(payload: dict) -> ExecutionResult:
    error = payload.get("error")
    if isinstance(error, str):  # older REPL images return a bare traceback
        error = {"name": "Error", "value": error.strip().splitlines()[-1] if error.strip() else error, "traceback": error}
    return ExecutionResult(
        stdout=payload.get("stdout", "") or "",
        images=[base64.b64decode(img) for img in payload.get("images") or []],
        error=ExecutionError(
            name=error.get("name", "Error"),
            value=error.get("value", ""),
            traceback=error.get("traceback", ""),
        ) if error else None,
    )
