"""In-memory view model of one chat session."""

import asyncio
from bisect import bisect_right
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import UUID

import structlog

from ..domain.models import Conversation, Message, SessionUpdate

logger = structlog.get_logger()


class SessionState:
    """Conversation snapshot plus per-thread message lists.

    The conversation list is only ever replaced as a whole, so a reader sees
    either the previous or the new snapshot. Thread merges are idempotent on
    message id.
    """

    def __init__(self, listener_buffer: int = 100) -> None:
        self._conversations: Tuple[Conversation, ...] = ()
        self._threads: Dict[UUID, List[Message]] = {}
        self._listeners: List[asyncio.Queue] = []
        self._listener_buffer = listener_buffer
        self.error: Optional[str] = None
        self.loading = True

    @property
    def conversations(self) -> List[Conversation]:
        return list(self._conversations)

    def replace_conversations(self, conversations: Iterable[Conversation]) -> None:
        self._conversations = tuple(conversations)
        self.error = None
        self.loading = False
        self.publish(SessionUpdate(kind="conversations", conversations=list(self._conversations)))

    def record_error(self, error: str) -> None:
        """Keep the last good snapshot and surface ``error``."""
        self.error = error
        self.loading = False
        self.publish(SessionUpdate(kind="error", error=error))

    def thread(self, barter_request_id: UUID) -> List[Message]:
        return list(self._threads.get(barter_request_id, ()))

    @property
    def loaded_threads(self) -> List[UUID]:
        return list(self._threads)

    def has_conversation(self, barter_request_id: UUID) -> bool:
        return any(c.barter_request_id == barter_request_id for c in self._conversations)

    def tracks(self, barter_request_id: UUID) -> bool:
        """True for threads in the current snapshot or already loaded."""
        return barter_request_id in self._threads or self.has_conversation(barter_request_id)

    def merge_message(self, message: Message) -> bool:
        """Insert ``message`` in timestamp order. Returns False if already present."""
        thread = self._threads.setdefault(message.barter_request_id, [])
        if any(m.id == message.id for m in thread):
            logger.debug("duplicate_message_ignored", message_id=str(message.id))
            return False
        position = bisect_right([m.created_at for m in thread], message.created_at)
        thread.insert(position, message)
        self.publish(SessionUpdate(kind="message", message=message))
        return True

    def replace_thread(self, barter_request_id: UUID, history: List[Message]) -> List[Message]:
        """Install a fetched history, keeping live messages it does not contain yet."""
        known = {m.id for m in history}
        merged = list(history)
        for message in self._threads.get(barter_request_id, ()):
            if message.id not in known:
                merged.insert(bisect_right([m.created_at for m in merged], message.created_at), message)
        self._threads[barter_request_id] = merged
        return list(merged)

    def forget_thread(self, barter_request_id: UUID) -> None:
        self._threads.pop(barter_request_id, None)

    def clear(self) -> None:
        self._conversations = ()
        self._threads.clear()
        self.error = None
        self.loading = True

    # Listeners

    def add_listener(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._listener_buffer)
        self._listeners.append(queue)
        return queue

    def remove_listener(self, queue: asyncio.Queue) -> None:
        if queue in self._listeners:
            self._listeners.remove(queue)

    def publish(self, update: SessionUpdate) -> None:
        for queue in self._listeners:
            if queue.full():
                # Slow consumer: drop its oldest update
                queue.get_nowait()
                logger.warning("listener_update_dropped", kind=update.kind)
            queue.put_nowait(update)
