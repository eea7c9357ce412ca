# repl_server.py
import asyncio
import base64
import io
import os
import traceback
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import redirect_stdout

from fastapi import Depends, FastAPI, Header, HTTPException
from pydantic import BaseModel

# FastAPI 'bridge' between the host and the Python REPL in the container's memory.
# Runs inside the sandbox image (see Dockerfile.sandbox): uvicorn repl_server:app --port 9000

app = FastAPI()

# One long-lived namespace => variables persist across calls
GLOBAL_NS = {"__name__": "__main__"}

# Figures rendered during the current /exec call (PNG bytes, in order)
_captured: list = []
_exec_lock = asyncio.Lock()

# Python threads cannot be killed, so code that outlives its timeout keeps
# running on the single worker. Until it finishes, /exec refuses new code:
# the stray run still owns sys.stdout and could still emit figures.
_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="repl")
_worker: Future | None = None

BUSY_ERROR = {
    "name": "SandboxBusy",
    "value": "A previous execution timed out and is still running. Try again later.",
    "traceback": "",
}


class ExecRequest(BaseModel):
    code: str
    timeout: int | None = 120  # seconds


def require_token(authorization: str | None = Header(default=None)):
    expected = os.getenv("SANDBOX_TOKEN", "")
    if expected and authorization != f"Bearer {expected}":
        raise HTTPException(status_code=401, detail="invalid sandbox token")


def _figure_png(fig) -> bytes:
    buf = io.BytesIO()
    fig.savefig(buf, format="png", bbox_inches="tight")
    return buf.getvalue()


def _capture_open_figures() -> None:
    try:
        import matplotlib.pyplot as plt
    except ImportError:
        return
    for num in plt.get_fignums():
        fig = plt.figure(num)
        _captured.append(_figure_png(fig))
        plt.close(fig)


def _install_show_hook() -> None:
    """Make plt.show() hand figures to us instead of trying to open a window."""
    try:
        import matplotlib
        matplotlib.use("Agg")
        import matplotlib.pyplot as plt
    except ImportError:
        return

    def show(*args, **kwargs):
        _capture_open_figures()

    plt.show = show


def _run(code: str, out: io.StringIO) -> None:
    with redirect_stdout(out):
        # Use one shared dict -> state persists
        exec(code, GLOBAL_NS, GLOBAL_NS)


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/exec", dependencies=[Depends(require_token)])
async def exec_code(req: ExecRequest):
    global _worker
    async with _exec_lock:
        if _worker is not None and not _worker.done():
            return {"ok": False, "stdout": "", "images": [], "error": BUSY_ERROR}

        out = io.StringIO()
        _captured.clear()
        _install_show_hook()
        error = None
        try:
            _worker = _executor.submit(_run, req.code, out)
            # shielded so a timeout leaves the worker future uncancelled
            await asyncio.wait_for(asyncio.shield(asyncio.wrap_future(_worker)), timeout=req.timeout or 120)
        except asyncio.TimeoutError:
            error = {"name": "TimeoutError", "value": "Execution timed out.", "traceback": ""}
        except Exception as e:
            error = {"name": type(e).__name__, "value": str(e), "traceback": traceback.format_exc()}

        # figures the code left open count as produced too
        _capture_open_figures()
        images = [base64.b64encode(png).decode("ascii") for png in _captured]
        _captured.clear()

        return {
            "ok": error is None,
            "stdout": out.getvalue(),
            "images": images,
            "error": error,
        }
