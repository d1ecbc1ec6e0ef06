"""Registry of live chat sessions, one per signed-in user."""

import asyncio
from typing import Dict, Optional
from uuid import UUID

import structlog

from ..config import Settings
from ..domain.session import AuthContext
from ..repositories.base import StoreGateway
from ..services.chat_session import ChatSession

logger = structlog.get_logger()


class SessionRegistry:
    """Starts sessions lazily and closes all of them on shutdown."""

    def __init__(self, store: StoreGateway, settings: Optional[Settings] = None) -> None:
        self.store = store
        self.settings = settings or Settings()
        self._sessions: Dict[UUID, ChatSession] = {}
        self._starting: Dict[UUID, asyncio.Lock] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    async def get(self, user_id: UUID) -> ChatSession:
        """Return the user's session, starting it on first use.

        Start-up runs under a per-user lock, so one user's slow start does
        not hold up anyone else.
        """
        async with self._lock:
            session = self._sessions.get(user_id)
            if session is not None:
                return session
            starting = self._starting.setdefault(user_id, asyncio.Lock())

        async with starting:
            async with self._lock:
                session = self._sessions.get(user_id)
            if session is not None:
                return session
            session = ChatSession(self.store, AuthContext(user_id), self.settings)
            await session.start()
            async with self._lock:
                self._sessions[user_id] = session
                self._starting.pop(user_id, None)
                logger.info("session_registered", user_id=str(user_id), active_sessions=len(self._sessions))
            return session

    async def end(self, user_id: UUID) -> None:
        """Close the user's session, e.g. on sign-out."""
        async with self._lock:
            session = self._sessions.pop(user_id, None)
        if session is not None:
            await session.close()

    async def close_all(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            await session.close()
        logger.info("sessions_closed", count=len(sessions))
