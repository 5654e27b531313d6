from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from relay.errors import DuplicateSession
from relay.session import Session

LOGGER = logging.getLogger(__name__)


class SessionRegistry:
    """In-memory registry of active call sessions.

    Operations on the same call id are serialized by a per-key lock; there is
    no lock spanning different calls. A key's lock lives as long as any
    operation on that key holds or waits for it.

    Note: This is a single-process store. For multi-worker deployments, route
    a call's webhook and media stream to the same worker.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _locked(self, call_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(call_id, asyncio.Lock())
        self._lock_users[call_id] = self._lock_users.get(call_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[call_id] -= 1
            if self._lock_users[call_id] == 0:
                del self._lock_users[call_id]
                del self._locks[call_id]

    async def create(self, call_id: str, **fields) -> Session:
        async with self._locked(call_id):
            if call_id in self._sessions:
                raise DuplicateSession(f"Session {call_id} already exists", call_id=call_id)
            session = Session(call_id=call_id, **fields)
            self._sessions[call_id] = session

        LOGGER.info("Registered session %s (active=%s)", call_id, len(self._sessions))
        return session

    def get(self, call_id: str) -> Session | None:
        return self._sessions.get(call_id)

    async def remove(self, call_id: str) -> Session | None:
        """Remove a session. Removing an unknown call id is a no-op."""

        async with self._locked(call_id):
            session = self._sessions.pop(call_id, None)

        if session is not None:
            LOGGER.info("Removed session %s (active=%s)", call_id, len(self._sessions))
        return session

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._sessions

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def snapshot(self) -> list[Session]:
        return list(self._sessions.values())

    async def close_all(self, closer: Callable[[Session], Awaitable[None]]) -> None:
        """Close every registered session (for shutdown)."""
        for session in self.snapshot():
            try:
                await closer(session)
            except Exception:
                LOGGER.exception("Error closing session %s", session.call_id)
            await self.remove(session.call_id)
