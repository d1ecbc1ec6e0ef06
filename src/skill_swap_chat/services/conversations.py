"""Conversation list derivation.

A conversation is not stored anywhere. It is computed from the barter
requests the user takes part in, the counterpart's public profile and the
latest message of each thread. Requests that cannot be resolved (deleted
skill, missing profile, failed lookup) are dropped one by one; only a
failure of the initial request listing fails the whole derivation.
"""

from typing import Dict, Iterable, List, Optional
from uuid import UUID

import structlog
from pydantic import ValidationError as ModelValidationError

from ..domain.errors import NotFoundOrphan, StoreError
from ..domain.models import (
    BarterRequest,
    Conversation,
    DerivationResult,
    MessagePreview,
    PublicProfile,
    Table,
)
from ..repositories.base import Order, StoreGateway

logger = structlog.get_logger()


def counterpart_of(user_id: UUID, request: BarterRequest, skill_owner_id: Optional[UUID]) -> Optional[UUID]:
    """Return the other participant of ``request``, or None if the user is not in it."""
    if request.requester_id == user_id:
        return skill_owner_id
    if skill_owner_id is not None and skill_owner_id == user_id:
        return request.requester_id
    return None


def build_conversations(
    user_id: UUID,
    requests: Iterable[BarterRequest],
    skill_owners: Dict[UUID, UUID],
    profiles: Dict[UUID, PublicProfile],
    latest_messages: Dict[UUID, MessagePreview],
) -> List[Conversation]:
    """Assemble the conversation list from already-fetched data.

    ``requests`` must already be ordered by last activity, newest first.
    ``skill_owners`` maps request id to the requested skill's owner.
    """
    conversations = []
    for request in requests:
        other_id = counterpart_of(user_id, request, skill_owners.get(request.id))
        if other_id is None:
            continue
        profile = profiles.get(other_id)
        if profile is None:
            continue
        conversations.append(
            Conversation(
                id=request.id,
                barter_request_id=request.id,
                participant=profile,
                status=request.status,
                updated_at=request.updated_at,
                last_message=latest_messages.get(request.id),
            )
        )
    return conversations


def filter_conversations(conversations: Iterable[Conversation], term: Optional[str]) -> List[Conversation]:
    """Case-insensitive search on the counterpart's display name."""
    if not term:
        return list(conversations)
    needle = term.strip().lower()
    return [c for c in conversations if needle in c.participant.display_name.lower()]


class ConversationDeriver:
    """Builds a user's conversation list from the store."""

    def __init__(self, store: StoreGateway) -> None:
        self.store = store

    async def derive(self, user_id: UUID) -> DerivationResult:
        try:
            rows = await self.store.query(
                Table.BARTER_REQUESTS, order=Order(column="updated_at", descending=True)
            )
        except StoreError as e:
            logger.error("conversation_list_fetch_failed", user_id=str(user_id), error=str(e))
            return DerivationResult(conversations=[], error="Failed to load conversations")

        requests: List[BarterRequest] = []
        skill_owners: Dict[UUID, UUID] = {}
        profiles: Dict[UUID, PublicProfile] = {}
        latest: Dict[UUID, MessagePreview] = {}
        # Lookups shared by several requests within one derivation
        owner_cache: Dict[UUID, Optional[UUID]] = {}
        profile_cache: Dict[UUID, Optional[PublicProfile]] = {}

        for row in rows:
            try:
                request = BarterRequest.model_validate(row)
            except ModelValidationError as e:
                logger.warning("barter_request_malformed", row_id=str(row.get("id")), error=str(e))
                continue
            try:
                owner_id = await self._skill_owner(request, owner_cache)
                other_id = counterpart_of(user_id, request, owner_id)
                if other_id is None:
                    continue
                profile = await self._profile(request, other_id, profile_cache)
                preview = await self._latest_message(request.id)
            except NotFoundOrphan as e:
                logger.debug("conversation_skipped", conversation_id=str(request.id), reason=e.reason)
                continue
            except StoreError as e:
                logger.warning("conversation_lookup_failed", conversation_id=str(request.id), error=str(e))
                continue

            requests.append(request)
            skill_owners[request.id] = owner_id
            profiles[other_id] = profile
            if preview is not None:
                latest[request.id] = preview

        conversations = build_conversations(user_id, requests, skill_owners, profiles, latest)
        logger.info(
            "conversation_list_derived",
            user_id=str(user_id),
            requests=len(rows),
            conversations=len(conversations),
        )
        return DerivationResult(conversations=conversations)

    async def _skill_owner(self, request: BarterRequest, cache: Dict[UUID, Optional[UUID]]) -> UUID:
        skill_id = request.requested_skill_id
        if skill_id is None:
            raise NotFoundOrphan(request.id, "no requested skill")
        if skill_id not in cache:
            row = await self.store.query_one(Table.SKILLS, {"id": skill_id})
            cache[skill_id] = row.get("user_id") if row else None
        owner_id = cache[skill_id]
        if owner_id is None:
            raise NotFoundOrphan(request.id, "requested skill not found")
        return owner_id

    async def _profile(
        self, request: BarterRequest, user_id: UUID, cache: Dict[UUID, Optional[PublicProfile]]
    ) -> PublicProfile:
        if user_id not in cache:
            row = await self.store.query_one(Table.PROFILES_PUBLIC, {"id": user_id})
            cache[user_id] = PublicProfile.model_validate(row) if row else None
        profile = cache[user_id]
        if profile is None:
            raise NotFoundOrphan(request.id, "counterpart profile not found")
        return profile

    async def _latest_message(self, request_id: UUID) -> Optional[MessagePreview]:
        rows = await self.store.query(
            Table.MESSAGES,
            {"barter_request_id": request_id},
            order=Order(column="created_at", descending=True),
            limit=1,
        )
        if not rows:
            return None
        return MessagePreview(content=rows[0]["content"], created_at=rows[0]["created_at"])
