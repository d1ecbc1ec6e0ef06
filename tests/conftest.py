"""Shared fixtures: a fresh in-memory store and helpers to seed it."""

from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

import pytest

from skill_swap_chat.domain.models import Table
from skill_swap_chat.repositories.memory import InMemoryStore

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    """Timestamp ``minutes`` after T0."""
    return T0 + timedelta(minutes=minutes)


class Seeder:
    """Writes fixture rows straight into the store."""

    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def user(self, full_name: Optional[str], avatar_url: Optional[str] = None) -> UUID:
        email = f"{(full_name or 'anon').lower().replace(' ', '.')}@example.com"
        row = await self.store.insert(
            Table.PROFILES,
            {"full_name": full_name, "email": email, "avatar_url": avatar_url},
        )
        return row["id"]

    async def skill(
        self,
        owner: UUID,
        title: str = "Guitar lessons",
        is_active: bool = True,
        created_at: Optional[datetime] = None,
    ) -> UUID:
        record = {"user_id": owner, "title": title, "category": "music", "is_active": is_active}
        if created_at is not None:
            record["created_at"] = created_at
        row = await self.store.insert(Table.SKILLS, record)
        return row["id"]

    async def request(
        self,
        requester: UUID,
        requested_skill: Optional[UUID],
        offered_skill: Optional[UUID] = None,
        updated_at: Optional[datetime] = None,
        status: str = "pending",
    ) -> UUID:
        record = {
            "requester_id": requester,
            "requested_skill_id": requested_skill,
            "offered_skill_id": offered_skill,
            "status": status,
        }
        if updated_at is not None:
            record["updated_at"] = updated_at
        row = await self.store.insert(Table.BARTER_REQUESTS, record)
        return row["id"]

    async def message(
        self, request_id: UUID, sender: UUID, content: str, created_at: Optional[datetime] = None
    ) -> UUID:
        record = {"barter_request_id": request_id, "sender_id": sender, "content": content}
        if created_at is not None:
            record["created_at"] = created_at
        row = await self.store.insert(Table.MESSAGES, record)
        return row["id"]


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def seed(store: InMemoryStore) -> Seeder:
    return Seeder(store)
