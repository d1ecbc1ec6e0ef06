"""Domain models for the skill-swap chat engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Table(str, Enum):
    """Tables and views exposed by the store."""

    SKILLS = "skills"
    BARTER_REQUESTS = "barter_requests"
    MESSAGES = "messages"
    PROFILES = "profiles"
    PROFILES_PUBLIC = "profiles_public"


# Columns of the public profile projection; never the email
PUBLIC_PROFILE_COLUMNS = (
    "id",
    "full_name",
    "bio",
    "location",
    "avatar_url",
    "created_at",
    "updated_at",
)


class BarterStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETED = "completed"


class Skill(BaseModel):
    """Skill listed by a user."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    title: str = ""
    category: str = ""
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class BarterRequest(BaseModel):
    """Swap proposal; also the identity of one conversation thread."""

    id: UUID = Field(default_factory=uuid4)
    requester_id: UUID
    requested_skill_id: Optional[UUID] = None
    offered_skill_id: Optional[UUID] = None
    status: BarterStatus = BarterStatus.PENDING
    message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)  # last activity


class Message(BaseModel):
    """Message model. Immutable once stored."""

    id: UUID = Field(default_factory=uuid4)
    barter_request_id: UUID
    sender_id: UUID
    content: str
    created_at: datetime = Field(default_factory=utcnow)


class PublicProfile(BaseModel):
    """Subset of a user record that other users may see."""

    id: UUID
    full_name: Optional[str] = None
    bio: Optional[str] = None
    location: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.full_name or "Unknown User"


class MessagePreview(BaseModel):
    content: str
    created_at: datetime


class Conversation(BaseModel):
    """Derived view of one thread for the current user. Never persisted."""

    id: UUID
    barter_request_id: UUID
    participant: PublicProfile
    status: BarterStatus
    updated_at: datetime
    last_message: Optional[MessagePreview] = None


class DerivationResult(BaseModel):
    """Outcome of a full conversation-list computation."""

    conversations: List[Conversation] = []
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class AppendResult(BaseModel):
    """Outcome of the two-phase message send.

    ``activity_bumped`` is False when the message was stored but the
    thread's last-activity timestamp could not be updated; the
    conversation ordering is then stale until the next change event.
    """

    message: Message
    activity_bumped: bool = True


class SessionUpdate(BaseModel):
    """Notification pushed to listeners of a chat session."""

    kind: str  # "conversations", "message" or "error"
    conversations: Optional[List[Conversation]] = None
    message: Optional[Message] = None
    error: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
