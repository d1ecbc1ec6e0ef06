"""Per-user chat session: conversation list, threads and live updates."""

import asyncio
from datetime import datetime
from typing import Callable, List, Optional
from uuid import UUID

import structlog

from ..config import Settings
from ..domain.errors import ConversationNotFound, StoreError
from ..domain.models import (
    AppendResult,
    BarterRequest,
    Conversation,
    DerivationResult,
    Message,
    Skill,
    utcnow,
)
from ..domain.session import AuthContext
from ..repositories.base import StoreGateway
from .bootstrap import ConversationBootstrap
from .conversations import ConversationDeriver, filter_conversations
from .live_sync import LiveSyncEngine
from .messages import MessageStoreAdapter
from .state import SessionState

logger = structlog.get_logger()


class ChatSession:
    """Single owner of one user's in-memory chat state.

    Use as an async context manager so both live channels are released on
    every exit path::

        async with ChatSession(store, AuthContext(user_id)) as session:
            await session.load_thread(session.conversations[0].id)
    """

    def __init__(
        self,
        store: StoreGateway,
        context: AuthContext,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.context = context
        self.settings = settings or Settings()
        self.state = SessionState()
        self.deriver = ConversationDeriver(store)
        self.messages = MessageStoreAdapter(store, self.settings.max_message_length, clock)
        self.bootstrap = ConversationBootstrap(
            store,
            on_change=self.refresh_conversations,
            max_note_length=self.settings.max_message_length,
        )
        self.live = LiveSyncEngine(store, self.state, self.refresh_conversations, self.settings)
        self.context.add_listener(self._on_auth_changed)

    async def __aenter__(self) -> "ChatSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def conversations(self) -> List[Conversation]:
        return self.state.conversations

    @property
    def error(self) -> Optional[str]:
        return self.state.error

    @property
    def loading(self) -> bool:
        return self.state.loading

    def thread(self, barter_request_id: UUID) -> List[Message]:
        return self.state.thread(barter_request_id)

    def search(self, term: Optional[str]) -> List[Conversation]:
        return filter_conversations(self.state.conversations, term)

    def add_listener(self) -> asyncio.Queue:
        return self.state.add_listener()

    def remove_listener(self, queue: asyncio.Queue) -> None:
        self.state.remove_listener(queue)

    async def start(self) -> None:
        """Subscribe to live changes and load the conversation list."""
        if not self.context.is_authenticated:
            logger.info("chat_session_waiting_for_user")
            return
        await self.live.start()
        try:
            await self.refresh_conversations()
        except BaseException:
            await self.live.stop()
            raise
        logger.info("chat_session_started", user_id=str(self.context.user_id))

    async def close(self) -> None:
        self.context.remove_listener(self._on_auth_changed)
        await self.live.stop()
        logger.info("chat_session_closed", user_id=str(self.context.user_id))

    async def _on_auth_changed(self, previous: Optional[UUID], current: Optional[UUID]) -> None:
        await self.live.stop()
        self.state.clear()
        if current is not None:
            await self.start()

    async def refresh_conversations(self) -> DerivationResult:
        """Recompute the conversation list; keep the old one if it fails."""
        user_id = self.context.require_user()
        result = await self.deriver.derive(user_id)
        if self.context.user_id != user_id:
            logger.info("stale_conversation_list_discarded", user_id=str(user_id))
            return result
        if result.ok:
            self.state.replace_conversations(result.conversations)
        else:
            self.state.record_error(result.error)
        return result

    async def refresh(self) -> DerivationResult:
        """Full recomputation, including every thread loaded so far.

        This is the only way to recover messages missed while a channel was
        down.
        """
        result = await self.refresh_conversations()
        for barter_request_id in self.state.loaded_threads:
            try:
                await self.load_thread(barter_request_id)
            except ConversationNotFound:
                self.state.forget_thread(barter_request_id)
            except StoreError:
                break
        return result

    async def require_participant(self, barter_request_id: UUID) -> None:
        """Raise ConversationNotFound unless the user is part of the thread.

        A thread missing from the snapshot may simply be new, so the list is
        recomputed once before giving up.
        """
        if self.state.has_conversation(barter_request_id):
            return
        result = await self.refresh_conversations()
        if not result.ok:
            raise StoreError(result.error)
        if not self.state.has_conversation(barter_request_id):
            logger.warning(
                "conversation_access_denied",
                user_id=str(self.context.user_id),
                conversation_id=str(barter_request_id),
            )
            raise ConversationNotFound(barter_request_id)

    async def load_thread(self, barter_request_id: UUID) -> List[Message]:
        self.context.require_user()
        await self.require_participant(barter_request_id)
        try:
            history = await self.messages.fetch_history(barter_request_id)
        except StoreError as e:
            logger.error("thread_load_failed", conversation_id=str(barter_request_id), error=str(e))
            self.state.record_error("Failed to load messages")
            raise
        return self.state.replace_thread(barter_request_id, history)

    async def send_message(self, barter_request_id: UUID, content: str) -> AppendResult:
        user_id = self.context.require_user()
        await self.require_participant(barter_request_id)
        try:
            result = await self.messages.append(barter_request_id, user_id, content)
        except StoreError as e:
            logger.error("send_message_failed", conversation_id=str(barter_request_id), error=str(e))
            self.state.record_error("Failed to send message")
            raise
        self.live.submit(result.message)
        return result

    async def get_or_create_conversation(
        self, other_user_id: UUID, offered_skill_id: Optional[UUID] = None
    ) -> UUID:
        user_id = self.context.require_user()
        try:
            return await self.bootstrap.get_or_create(user_id, other_user_id, offered_skill_id)
        except StoreError as e:
            logger.error("start_conversation_failed", counterpart_id=str(other_user_id), error=str(e))
            self.state.record_error("Failed to start conversation")
            raise

    async def propose_swap(
        self, requested_skill_id: UUID, offered_skill_id: Optional[UUID], note: Optional[str] = None
    ) -> BarterRequest:
        user_id = self.context.require_user()
        try:
            return await self.bootstrap.propose_swap(user_id, requested_skill_id, offered_skill_id, note)
        except StoreError as e:
            logger.error("propose_swap_failed", skill_id=str(requested_skill_id), error=str(e))
            self.state.record_error("Failed to send swap proposal")
            raise

    async def offerable_skills(self) -> List[Skill]:
        user_id = self.context.require_user()
        return await self.bootstrap.list_offerable_skills(user_id)
