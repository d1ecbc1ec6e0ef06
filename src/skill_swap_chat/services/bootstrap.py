"""Find-or-create barter requests that serve as conversation containers."""

from typing import Awaitable, Callable, List, Optional, Set
from uuid import UUID

import structlog

from ..config import MAX_MESSAGE_LENGTH
from ..domain.errors import StoreError, ValidationError
from ..domain.models import BarterRequest, BarterStatus, Skill, Table
from ..repositories.base import Order, StoreGateway

logger = structlog.get_logger()

OnChange = Callable[[], Awaitable[None]]


class ConversationBootstrap:
    """Opens conversations outside of, and through, the propose-swap flow.

    ``on_change`` is awaited after a request is created (or reused) so the
    owning session can recompute its conversation list.
    """

    def __init__(
        self,
        store: StoreGateway,
        on_change: Optional[OnChange] = None,
        max_note_length: int = MAX_MESSAGE_LENGTH,
    ) -> None:
        self.store = store
        self.on_change = on_change
        self.max_note_length = max_note_length

    async def get_or_create(
        self,
        current_user_id: UUID,
        other_user_id: UUID,
        offered_skill_id: Optional[UUID] = None,
    ) -> UUID:
        """Return the id of the request linking both users, creating it if needed."""
        if current_user_id == other_user_id:
            raise ValidationError("You cannot start a conversation with yourself")

        existing = await self.find_between(current_user_id, other_user_id)
        if existing is not None:
            logger.info("conversation_reused", conversation_id=str(existing))
            await self._changed()
            return existing

        if offered_skill_id is None:
            raise ValidationError("Please select a skill to offer first")

        offered = await self.store.query_one(Table.SKILLS, {"id": offered_skill_id})
        if offered is None or offered.get("user_id") != current_user_id:
            raise ValidationError("The offered skill must be one of your own skills")

        requested = await self._latest_active_skill(other_user_id)
        if requested is None:
            raise ValidationError("This user has no active skills to swap")

        row = await self.store.insert(
            Table.BARTER_REQUESTS,
            {
                "requester_id": current_user_id,
                "requested_skill_id": requested.id,
                "offered_skill_id": offered_skill_id,
                "status": BarterStatus.PENDING.value,
            },
        )
        logger.info(
            "conversation_created",
            conversation_id=str(row["id"]),
            requester_id=str(current_user_id),
            counterpart_id=str(other_user_id),
        )
        await self._changed()
        return row["id"]

    async def find_between(self, user_a: UUID, user_b: UUID) -> Optional[UUID]:
        """Most recently active request between the two users, either direction."""
        for requester, owner in ((user_a, user_b), (user_b, user_a)):
            owner_skills = await self._skill_ids(owner)
            if not owner_skills:
                continue
            rows = await self.store.query(
                Table.BARTER_REQUESTS,
                {"requester_id": requester},
                order=Order(column="updated_at", descending=True),
            )
            for row in rows:
                if row.get("requested_skill_id") in owner_skills:
                    return row["id"]
        return None

    async def list_offerable_skills(self, user_id: UUID) -> List[Skill]:
        """Active skills the user can put up for a swap."""
        rows = await self.store.query(
            Table.SKILLS,
            {"user_id": user_id, "is_active": True},
            order=Order(column="created_at"),
        )
        return [Skill.model_validate(row) for row in rows]

    async def propose_swap(
        self,
        user_id: UUID,
        requested_skill_id: UUID,
        offered_skill_id: Optional[UUID],
        note: Optional[str] = None,
    ) -> BarterRequest:
        """Create a pending swap and post its note as the first message."""
        if offered_skill_id is None:
            raise ValidationError("Please select a skill to offer")
        note = (note or "").strip()
        if len(note) > self.max_note_length:
            raise ValidationError(f"Message too long. Maximum {self.max_note_length} characters.")

        requested = await self.store.query_one(Table.SKILLS, {"id": requested_skill_id})
        if requested is None:
            raise ValidationError("The requested skill no longer exists")
        if requested.get("user_id") == user_id:
            raise ValidationError("You cannot propose a swap for your own skill")
        offered = await self.store.query_one(Table.SKILLS, {"id": offered_skill_id})
        if offered is None or offered.get("user_id") != user_id or not offered.get("is_active", True):
            raise ValidationError("The offered skill must be one of your active skills")

        row = await self.store.insert(
            Table.BARTER_REQUESTS,
            {
                "requester_id": user_id,
                "requested_skill_id": requested_skill_id,
                "offered_skill_id": offered_skill_id,
                "message": note or None,
                "status": BarterStatus.PENDING.value,
            },
        )
        request = BarterRequest.model_validate(row)
        logger.info("swap_proposed", conversation_id=str(request.id), requester_id=str(user_id))

        if note:
            try:
                await self.store.insert(
                    Table.MESSAGES,
                    {"barter_request_id": request.id, "sender_id": user_id, "content": note},
                )
            except StoreError as e:
                # The swap stands even if its opening message is lost
                logger.error("initial_message_failed", conversation_id=str(request.id), error=str(e))

        await self._changed()
        return request

    async def _skill_ids(self, user_id: UUID) -> Set[UUID]:
        rows = await self.store.query(Table.SKILLS, {"user_id": user_id})
        return {row["id"] for row in rows}

    async def _latest_active_skill(self, user_id: UUID) -> Optional[Skill]:
        rows = await self.store.query(
            Table.SKILLS,
            {"user_id": user_id, "is_active": True},
            order=Order(column="created_at", descending=True),
            limit=1,
        )
        return Skill.model_validate(rows[0]) if rows else None

    async def _changed(self) -> None:
        if self.on_change is not None:
            await self.on_change()
