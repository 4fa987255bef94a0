"""In-memory chat sessions with a background reaper for idle ones."""

import asyncio
import datetime
import logging
import secrets
import time
from typing import Any

from models import ChangeEvent, ChatSession, LogEntry, LogsContext, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600
DEFAULT_CLEANUP_INTERVAL_SECONDS = 300


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


class ChatSessionStore:
    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
    ):
        self.ttl = datetime.timedelta(seconds=ttl_seconds)
        self.cleanup_interval = cleanup_interval
        self._sessions: dict[str, ChatSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._reaper: asyncio.Task | None = None

    def create(
        self,
        logs: list[LogEntry],
        all_logs: list[LogEntry],
        recent_changes: list[ChangeEvent],
        source: str,
        provider: str,
        model: str,
    ) -> str:
        now = utc_now()
        session = ChatSession(
            id=new_session_id(),
            created_at=now,
            last_activity=now,
            logs_context=LogsContext(
                logs=logs,
                all_logs=all_logs,
                recent_changes=recent_changes,
                source=source,
            ),
            provider=provider,
            model=model,
        )
        self._sessions[session.id] = session
        logger.info("Created chat session %s (%s, %d logs)", session.id, source, len(all_logs))
        return session.id

    def get(self, session_id: str) -> ChatSession | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        session.last_activity = utc_now()
        return session

    def update(self, session_id: str, **changes: Any) -> ChatSession | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None

        merged = session.model_dump()
        merged.update(changes)
        merged.update(
            id=session.id,
            created_at=session.created_at,
            last_activity=utc_now(),
        )
        updated = ChatSession.model_validate(merged)
        self._sessions[session_id] = updated
        return updated

    def delete(self, session_id: str) -> bool:
        self._locks.pop(session_id, None)
        return self._sessions.pop(session_id, None) is not None

    def lock(self, session_id: str) -> asyncio.Lock:
        """The lock that serializes turns within one session."""
        if session_id not in self._locks:
            self._locks[session_id] = asyncio.Lock()
        return self._locks[session_id]

    def sweep_expired(self, now: datetime.datetime | None = None) -> list[str]:
        now = now or datetime.datetime.now(datetime.timezone.utc)
        cutoff = now - self.ttl

        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if datetime.datetime.fromisoformat(session.last_activity) < cutoff
        ]
        for session_id in expired:
            self.delete(session_id)
            logger.info("Cleaned up expired session: %s", session_id)
        return expired

    async def _reap(self):
        while True:
            await asyncio.sleep(self.cleanup_interval)
            self.sweep_expired()

    def start(self):
        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.get_running_loop().create_task(self._reap())

    async def stop(self):
        if self._reaper is None:
            return
        self._reaper.cancel()
        try:
            await self._reaper
        except asyncio.CancelledError:
            pass
        self._reaper = None

    def __len__(self):
        return len(self._sessions)

    def __contains__(self, session_id):
        return session_id in self._sessions
