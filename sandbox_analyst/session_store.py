# ---------------------------
# sandbox_analyst/session_store.py
# ---------------------------
"""
In-memory, process-wide store of per-user sessions.

Sessions expire after `ttl_s` seconds without activity. Expiry happens in two
ways: lazily when a stale entry is read, and through a background sweep task
that runs every `sweep_interval_s` regardless of reads. Any read or write of a
live session counts as activity. Nothing is persisted; a restart drops every
session.

The store's own methods never await, so each call is atomic on the event loop.
A whole turn (read → run analysis → write) is not: wrap it in `locked(user_id)`
so two turns from the same identity cannot interleave and lose updates.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import fields
from typing import Callable, Dict, List, Optional

from .models import Session

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECS = 60 * 60          # 1 hour
DEFAULT_SWEEP_SECS = 10 * 60        # 10 minutes

# Fields a caller may merge through update(); identity and timestamp are managed here.
_MERGEABLE = {f.name for f in fields(Session)} - {"user_id", "last_activity"}


class SessionStore:
    def __init__(
        self,
        ttl_s: float = DEFAULT_TTL_SECS,
        sweep_interval_s: float = DEFAULT_SWEEP_SECS,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_s = ttl_s
        self.sweep_interval_s = sweep_interval_s
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, user_id: str) -> bool:
        return self.get(user_id) is not None

    def _expired(self, session: Session, now: float) -> bool:
        return now - session.last_activity > self.ttl_s

    def get(self, user_id: str) -> Optional[Session]:
        """
        Return the live session for `user_id` and refresh its activity
        timestamp. An expired session is dropped and None returned.
        """
        session = self._sessions.get(user_id)
        if session is None:
            return None
        now = self._clock()
        if self._expired(session, now):
            logger.info("Session %s expired; discarding", user_id)
            self._sessions.pop(user_id, None)
            return None
        session.last_activity = now
        return session

    def create(self, user_id: str) -> Session:
        session = Session(user_id=user_id, last_activity=self._clock())
        self._sessions[user_id] = session
        return session

    def update(self, user_id: str, **partial) -> Session:
        """
        Get-or-create the session, merge `partial` into it and refresh its
        activity timestamp.

        Raises:
            ValueError: if `partial` names a field a session does not have.
        """
        unknown = set(partial) - _MERGEABLE
        if unknown:
            raise ValueError(f"Unknown session field(s): {', '.join(sorted(unknown))}")

        session = self.get(user_id) or self.create(user_id)
        for name, value in partial.items():
            setattr(session, name, value)
        session.last_activity = self._clock()
        self._sessions[user_id] = session
        return session

    def delete(self, user_id: str) -> None:
        self._sessions.pop(user_id, None)

    def sweep(self) -> List[str]:
        """Remove every session older than the TTL. Returns the removed ids."""
        now = self._clock()
        removed = [sid for sid, s in list(self._sessions.items()) if self._expired(s, now)]
        for sid in removed:
            self._sessions.pop(sid, None)
        if removed:
            logger.info("Swept %d expired session(s)", len(removed))
        return removed

    @asynccontextmanager
    async def locked(self, user_id: str):
        """
        Serialize turns for one identity.

        The lock lives only while someone holds or waits on it, so senders that
        never get a session do not accumulate entries.
        """
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if not self._lock_users[user_id]:
                del self._lock_users[user_id]
                del self._locks[user_id]

    # ---------- background sweep ----------

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_s)
            self.sweep()

    def start_sweeper(self) -> asyncio.Task:
        """Start the periodic sweep on the running event loop (idempotent)."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever())
        return self._sweeper

    async def stop_sweeper(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
