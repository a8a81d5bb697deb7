"""
Provider session cache.

Keyed by ``provider:identity``, time-bound per entry and passed in
explicitly so tests get a fresh cache. Reads never wait on a lock; a
refresh for a key is single-flight: concurrent callers share the one
in-flight task instead of each logging in again.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from calsync.models.calendar import ProviderSession

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderSessionCache:

    def __init__(self, clock: Clock = _utcnow):
        self._clock = clock
        self._sessions: Dict[str, ProviderSession] = {}
        self._inflight: Dict[str, "asyncio.Task[ProviderSession]"] = {}

    @staticmethod
    def key_for(provider: str, identity: str) -> str:
        return f"{provider}:{identity}"

    def get(self, key: str) -> Optional[ProviderSession]:
        session = self._sessions.get(key)
        if session is None:
            return None
        if session.is_expired(self._clock()):
            self._sessions.pop(key, None)
            return None
        return session

    async def get_or_refresh(
        self,
        key: str,
        refresh: Callable[[], Awaitable[ProviderSession]],
    ) -> ProviderSession:
        """
        Return a live session, running ``refresh`` at most once per key at a
        time when the cached one is missing or expired.
        """
        session = self.get(key)
        if session is not None:
            return session

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run_refresh(key, refresh))
            self._inflight[key] = task
        # one waiter being cancelled must not cancel the refresh the others share
        return await asyncio.shield(task)

    async def _run_refresh(
        self,
        key: str,
        refresh: Callable[[], Awaitable[ProviderSession]],
    ) -> ProviderSession:
        try:
            session = await refresh()
            self._sessions[key] = session
            logger.debug(f"Refreshed provider session {key} (expires {session.expires_at.isoformat()})")
            return session
        finally:
            self._inflight.pop(key, None)

    def invalidate(self, key: str) -> None:
        self._sessions.pop(key, None)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, s in self._sessions.items() if s.is_expired(now)]
        for key in expired:
            del self._sessions[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)
