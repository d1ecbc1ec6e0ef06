"""Store gateway interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict

from ..domain.models import Table

Row = Dict[str, Any]
Filters = Dict[str, Any]


class EventType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ALL = "*"


class SubscriptionStatus(str, Enum):
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


class Order(BaseModel):
    """Sort order for queries."""
    model_config = ConfigDict(frozen=True)

    column: str
    descending: bool = False


class ChangeEvent(BaseModel):
    """Row change delivered to subscribers."""
    model_config = ConfigDict(frozen=True)

    table: Table
    event_type: EventType
    new: Optional[Row] = None
    old: Optional[Row] = None


EventHandler = Callable[[ChangeEvent], None]
StatusHandler = Callable[[SubscriptionStatus], None]


@dataclass(eq=False)
class Subscription:
    """Handle for a live change subscription."""

    table: Table
    event: EventType
    handler: EventHandler
    on_status: Optional[StatusHandler] = None
    id: UUID = field(default_factory=uuid4)
    active: bool = True

    def matches(self, table: Table, event_type: EventType) -> bool:
        return self.active and self.table == table and self.event in (EventType.ALL, event_type)


class StoreGateway(ABC):
    """Abstract CRUD + subscribe interface of the datastore.

    Every request is asynchronous. Implementations raise ``StoreError`` when
    a request is rejected and ``StoreUnreachable`` when the service cannot
    be reached. No timeout is applied here; callers bound their own waits.
    """

    @abstractmethod
    async def query(
        self,
        table: Table,
        filters: Optional[Filters] = None,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        """Return all rows matching ``filters``."""
        pass

    @abstractmethod
    async def query_one(self, table: Table, filters: Filters) -> Optional[Row]:
        """Return the first matching row, or None when nothing matches."""
        pass

    @abstractmethod
    async def insert(self, table: Table, record: Row) -> Row:
        """Insert a record and return the stored row."""
        pass

    @abstractmethod
    async def update(self, table: Table, filters: Filters, patch: Row) -> List[Row]:
        """Apply ``patch`` to matching rows and return them."""
        pass

    @abstractmethod
    async def delete(self, table: Table, filters: Filters) -> List[Row]:
        """Delete matching rows and return them."""
        pass

    @abstractmethod
    async def subscribe(
        self,
        table: Table,
        event: EventType,
        handler: EventHandler,
        on_status: Optional[StatusHandler] = None,
    ) -> Subscription:
        """Start delivering change events for ``table`` to ``handler``."""
        pass

    @abstractmethod
    async def unsubscribe(self, subscription: Subscription) -> None:
        """Stop a subscription. Calling it twice is harmless."""
        pass
