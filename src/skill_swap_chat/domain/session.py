"""Identity context passed explicitly to every component."""

from typing import Awaitable, Callable, List, Optional
from uuid import UUID

import structlog

from .errors import AuthRequired

logger = structlog.get_logger()

AuthListener = Callable[[Optional[UUID], Optional[UUID]], Awaitable[None]]


class AuthContext:
    """Holds the signed-in user for one client session.

    The auth provider calls :meth:`set_user` on every auth-state change;
    registered listeners receive ``(previous_user_id, current_user_id)``.
    """

    def __init__(self, user_id: Optional[UUID] = None) -> None:
        self._user_id = user_id
        self._listeners: List[AuthListener] = []

    @property
    def user_id(self) -> Optional[UUID]:
        return self._user_id

    @property
    def is_authenticated(self) -> bool:
        return self._user_id is not None

    def require_user(self) -> UUID:
        if self._user_id is None:
            raise AuthRequired()
        return self._user_id

    def add_listener(self, listener: AuthListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: AuthListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def set_user(self, user_id: Optional[UUID]) -> None:
        """Apply an auth-state-changed notification."""
        previous = self._user_id
        if previous == user_id:
            return
        self._user_id = user_id
        logger.info(
            "auth_state_changed",
            previous_user_id=str(previous) if previous else None,
            user_id=str(user_id) if user_id else None,
        )
        for listener in list(self._listeners):
            await listener(previous, user_id)
