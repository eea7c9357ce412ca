# sandbox_analyst/sandbox/io.py
"""
Byte uploads into a running sandbox container.

Docker has no "write file" call, only `put_archive`, which unpacks a tar stream
into an existing directory. Uploading the dataset is therefore: make sure the
target directory exists, then ship a one-member tar named after the file.
"""

from __future__ import annotations

import io
import shlex
import tarfile
import time
from pathlib import PurePosixPath
from typing import Optional

# Owner of uploaded files inside the sandbox image.
SANDBOX_UID = 1000
SANDBOX_GID = 1000


def _tar_single_file_bytes(name: str, data: bytes, *, mode: int = 0o644, mtime: Optional[int] = None) -> bytes:
    """One-member tar archive holding `data` as `name`."""
    if not name:
        raise ValueError("archive member needs a file name")

    member = tarfile.TarInfo(name=name)
    member.size = len(data)
    member.mode = mode
    member.mtime = int(time.time()) if mtime is None else mtime
    member.uid, member.gid = SANDBOX_UID, SANDBOX_GID

    stream = io.BytesIO()
    with tarfile.open(fileobj=stream, mode="w") as archive:
        archive.addfile(member, io.BytesIO(data))
    return stream.getvalue()


def put_bytes(container, container_path: str, data: bytes, *, mode: int = 0o644) -> None:
    """
    Write `data` to the absolute file path `container_path` in `container`,
    replacing whatever is there.

    `container` only needs `exec_run` and `put_archive` (a docker-py Container).

    Raises:
        ValueError: `container_path` is relative or names a directory.
        RuntimeError: the directory could not be created or the archive was refused.
    """
    if not container_path.startswith("/") or container_path.endswith("/"):
        raise ValueError(f"expected an absolute file path, got {container_path!r}")

    target = PurePosixPath(container_path)
    directory = str(target.parent)

    exit_code, output = container.exec_run(["/bin/sh", "-lc", f"mkdir -p -- {shlex.quote(directory)}"])
    if exit_code != 0:
        raise RuntimeError(f"mkdir {directory} failed in sandbox (rc={exit_code}): {output!r}")

    archive = _tar_single_file_bytes(target.name, data, mode=mode)
    if not container.put_archive(path=directory, data=archive):
        raise RuntimeError(f"Docker rejected the upload of {container_path}")
