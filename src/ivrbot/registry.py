"""
Session registry: call SID -> live `CallSession`.

Constructed once at startup and handed to every component that routes
per-call events. Inserts go through one `asyncio.Lock`; session start-up and
teardown run outside it so one slow call never stalls another. Removal always
drops the map entry, even when the close it waits on is cancelled.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional

import structlog

from src.ivrbot.session import CallSession

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[str, str], CallSession]


class DuplicateSessionError(Exception):
    """Raised when a session already exists for a call SID."""
    pass


class SessionRegistry:
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory
        self._sessions: Dict[str, CallSession] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, call_sid: object) -> bool:
        return call_sid in self._sessions

    async def create(self, call_sid: str, stream_sid: str = "") -> CallSession:
        """
        Create and start a session.

        Raises:
            DuplicateSessionError: If `call_sid` already has a session.
        """
        async with self._lock:
            if call_sid in self._sessions:
                raise DuplicateSessionError(f"Session already exists for call {call_sid}")
            session = self._session_factory(call_sid, stream_sid)
            self._sessions[call_sid] = session

        await session.start()
        return session

    def get(self, call_sid: str) -> Optional[CallSession]:
        return self._sessions.get(call_sid)

    async def remove(self, call_sid: str) -> Optional[CallSession]:
        """
        Close and drop a session. Idempotent.

        The session (and its transcription bridge) is closed before it leaves
        the map.
        """
        session = self._sessions.get(call_sid)
        if session is None:
            return None

        try:
            await session.close()
        finally:
            # Drop the entry even when close is cancelled.
            if self._sessions.get(call_sid) is session:
                del self._sessions[call_sid]

        return session

    async def close_all(self) -> None:
        """Tear down every session (used at shutdown)."""
        call_sids = list(self._sessions)
        if call_sids:
            logger.info("Closing active sessions", count=len(call_sids))
        await asyncio.gather(*(self.remove(call_sid) for call_sid in call_sids), return_exceptions=True)

    def snapshot(self) -> List[Dict[str, Any]]:
        return [session.snapshot() for session in list(self._sessions.values())]
