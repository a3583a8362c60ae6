"""
In-memory registry of active game sessions.

Concurrency contract: callers enter ``serialized(user_id)`` for the whole
handling of one event, so a user's events are processed one at a time while
different users proceed in parallel. A user's lock is dropped once nobody
holds or waits for it and the user has no session. Sessions that are never
finished stay in memory until the process restarts.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from .models import GameSession


class SessionStore:
    """Holds at most one session per user."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._sessions: Dict[int, GameSession] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        self._holders: Dict[int, int] = {}

    def lock(self, user_id: int) -> asyncio.Lock:
        """Return the lock serialising events for ``user_id``."""
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def serialized(self, user_id: int) -> AsyncIterator[None]:
        """Hold the user's lock; waiters count as holders until they are done."""
        lock = self.lock(user_id)
        self._holders[user_id] = self._holders.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[user_id] -= 1
            if not self._holders[user_id]:
                del self._holders[user_id]
                if user_id not in self._sessions:
                    self._locks.pop(user_id, None)

    def get(self, user_id: int) -> Optional[GameSession]:
        return self._sessions.get(user_id)

    def set(self, session: GameSession) -> None:
        if session.user_id in self._sessions:
            self.logger.info(f"Replacing existing session for user {session.user_id}")
        self._sessions[session.user_id] = session

    def delete(self, user_id: int) -> bool:
        """Remove the user's session. Returns False if there was none."""
        removed = self._sessions.pop(user_id, None) is not None
        if user_id not in self._holders:
            self._locks.pop(user_id, None)
        return removed

    def __contains__(self, user_id: int) -> bool:
        return user_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def tracked_locks(self) -> int:
        return len(self._locks)
