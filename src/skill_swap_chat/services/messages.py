"""Message history and sending for a single thread."""

from datetime import datetime
from typing import Callable, List
from uuid import UUID

import structlog

from ..config import MAX_MESSAGE_LENGTH
from ..domain.errors import StoreError, ValidationError
from ..domain.models import AppendResult, Message, Table, utcnow
from ..repositories.base import Order, StoreGateway

logger = structlog.get_logger()


def validate_content(content: str, max_length: int = MAX_MESSAGE_LENGTH) -> str:
    """Return the trimmed content or raise ValidationError."""
    text = (content or "").strip()
    if not text:
        raise ValidationError("Message cannot be empty")
    if len(text) > max_length:
        raise ValidationError(f"Message too long. Maximum {max_length} characters.")
    return text


class MessageStoreAdapter:
    """Reads and appends messages of barter-request threads."""

    def __init__(
        self,
        store: StoreGateway,
        max_length: int = MAX_MESSAGE_LENGTH,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.max_length = max_length
        self._clock = clock

    async def fetch_history(self, barter_request_id: UUID) -> List[Message]:
        """Get the whole thread, oldest first. Store errors propagate."""
        rows = await self.store.query(
            Table.MESSAGES,
            {"barter_request_id": barter_request_id},
            order=Order(column="created_at"),
        )
        messages = [Message.model_validate(row) for row in rows]
        logger.debug("history_fetched", conversation_id=str(barter_request_id), count=len(messages))
        return messages

    async def append(self, barter_request_id: UUID, sender_id: UUID, content: str) -> AppendResult:
        """Store a message, then bump the thread's last-activity timestamp.

        The two writes are not atomic. If the bump fails the message stays
        delivered and the result reports ``activity_bumped=False``.
        """
        text = validate_content(content, self.max_length)

        row = await self.store.insert(
            Table.MESSAGES,
            {"barter_request_id": barter_request_id, "sender_id": sender_id, "content": text},
        )
        message = Message.model_validate(row)

        try:
            await self.store.update(
                Table.BARTER_REQUESTS,
                {"id": barter_request_id},
                {"updated_at": self._clock()},
            )
        except StoreError as e:
            logger.warning(
                "activity_bump_failed",
                conversation_id=str(barter_request_id),
                message_id=str(message.id),
                error=str(e),
            )
            return AppendResult(message=message, activity_bumped=False)

        logger.info(
            "message_sent",
            conversation_id=str(barter_request_id),
            message_id=str(message.id),
            content_length=len(text),
        )
        return AppendResult(message=message)
