"""In-memory store implementation."""

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from uuid import uuid4

import structlog

from ..domain.errors import StoreError, StoreUnreachable
from ..domain.models import PUBLIC_PROFILE_COLUMNS, BarterStatus, Table, utcnow
from .base import (
    ChangeEvent,
    EventHandler,
    EventType,
    Filters,
    Order,
    Row,
    StatusHandler,
    StoreGateway,
    Subscription,
    SubscriptionStatus,
)

logger = structlog.get_logger()

# Read-only views: view -> (source table, projected columns)
VIEWS: Dict[Table, Tuple[Table, Tuple[str, ...]]] = {
    Table.PROFILES_PUBLIC: (Table.PROFILES, PUBLIC_PROFILE_COLUMNS),
}


def _defaults(table: Table, now: datetime) -> Row:
    """Column defaults applied on insert, like the database would."""
    base: Row = {"id": uuid4()}
    if table == Table.SKILLS:
        base.update(title="", category="", is_active=True, created_at=now)
    elif table == Table.BARTER_REQUESTS:
        base.update(
            status=BarterStatus.PENDING.value,
            message=None,
            offered_skill_id=None,
            created_at=now,
            updated_at=now,
        )
    elif table == Table.MESSAGES:
        base.update(created_at=now)
    elif table == Table.PROFILES:
        base.update(
            full_name=None,
            email=None,
            bio=None,
            location=None,
            avatar_url=None,
            created_at=now,
            updated_at=now,
        )
    return base


def _matches(row: Row, filters: Optional[Filters]) -> bool:
    if not filters:
        return True
    return all(row.get(column) == value for column, value in filters.items())


def _sort_key(column: str) -> Callable[[Row], Any]:
    def key(row: Row) -> Any:
        value = row.get(column)
        # NULLs sort after values ascending, before them descending
        return (1, 0) if value is None else (0, value)

    return key


class InMemoryStore(StoreGateway):
    """Store gateway backed by process memory.

    Change events are fanned out to subscribers after the write is applied.
    Outages and channel drops can be simulated with :meth:`fail` and
    :meth:`drop_subscriptions`; every request is recorded in ``calls``.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._tables: Dict[Table, List[Row]] = {
            Table.SKILLS: [],
            Table.BARTER_REQUESTS: [],
            Table.MESSAGES: [],
            Table.PROFILES: [],
        }
        self._subscriptions: List[Subscription] = []
        self._lock = asyncio.Lock()
        self._failures: Set[Tuple[str, str]] = set()
        self.calls: List[Tuple[str, str]] = []
        logger.info("store_initialized", tables=[t.value for t in self._tables])

    # Fault injection

    def fail(self, operation: str = "*", table: str = "*") -> None:
        """Make matching requests raise StoreUnreachable until recover()."""
        self._failures.add((operation, Table(table).value if table != "*" else "*"))

    def recover(self) -> None:
        self._failures.clear()

    def drop_subscriptions(
        self, status: SubscriptionStatus = SubscriptionStatus.CHANNEL_ERROR, table: str = "*"
    ) -> int:
        """Simulate the realtime connection dropping every channel, or those on ``table``."""
        target = None if table == "*" else Table(table)
        dropped = [s for s in self._subscriptions if s.active and target in (None, s.table)]
        self._subscriptions = [s for s in self._subscriptions if s not in dropped]
        for subscription in dropped:
            subscription.active = False
            if subscription.on_status is not None:
                subscription.on_status(status)
        logger.warning("subscriptions_dropped", count=len(dropped), status=status.value)
        return len(dropped)

    @property
    def active_subscriptions(self) -> int:
        return sum(1 for s in self._subscriptions if s.active)

    def _check(self, operation: str, table: Table) -> None:
        self.calls.append((operation, table.value))
        for candidate in ((operation, table.value), (operation, "*"), ("*", table.value), ("*", "*")):
            if candidate in self._failures:
                logger.error("store_unreachable", operation=operation, table=table.value)
                raise StoreUnreachable(f"Store unreachable during {operation} on {table.value}")

    def _rows(self, table: Table) -> List[Row]:
        if table in VIEWS:
            source, columns = VIEWS[table]
            return [{c: row.get(c) for c in columns} for row in self._tables[source]]
        try:
            return self._tables[table]
        except KeyError:
            raise StoreError(f"Unknown table {table}")

    def _writable(self, table: Table) -> List[Row]:
        if table in VIEWS:
            raise StoreError(f"{table.value} is a read-only view")
        return self._rows(table)

    # Queries

    async def query(
        self,
        table: Table,
        filters: Optional[Filters] = None,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        table = Table(table)
        self._check("query", table)
        async with self._lock:
            rows = [dict(r) for r in self._rows(table) if _matches(r, filters)]
        if order is not None:
            # Ties follow insertion order in the requested direction
            if order.descending:
                rows.reverse()
            rows.sort(key=_sort_key(order.column), reverse=order.descending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def query_one(self, table: Table, filters: Filters) -> Optional[Row]:
        table = Table(table)
        self._check("query_one", table)
        async with self._lock:
            for row in self._rows(table):
                if _matches(row, filters):
                    return dict(row)
        return None

    # Writes

    async def insert(self, table: Table, record: Row) -> Row:
        table = Table(table)
        self._check("insert", table)
        async with self._lock:
            rows = self._writable(table)
            row = _defaults(table, self._clock())
            row.update(record)
            if table == Table.MESSAGES:
                self._check_message(row)
            if any(r["id"] == row["id"] for r in rows):
                raise StoreError(f"Duplicate key {row['id']} in {table.value}")
            rows.append(row)
            inserted = dict(row)
        logger.debug("row_inserted", table=table.value, row_id=str(inserted["id"]))
        self._notify(ChangeEvent(table=table, event_type=EventType.INSERT, new=dict(inserted)))
        return inserted

    def _check_message(self, row: Row) -> None:
        request_id = row.get("barter_request_id")
        if request_id is None:
            raise StoreError("messages.barter_request_id is required")
        if not any(r["id"] == request_id for r in self._tables[Table.BARTER_REQUESTS]):
            raise StoreError(f"Barter request {request_id} does not exist")
        if not row.get("content"):
            raise StoreError("messages.content is required")

    async def update(self, table: Table, filters: Filters, patch: Row) -> List[Row]:
        table = Table(table)
        self._check("update", table)
        changes = []
        async with self._lock:
            for row in self._writable(table):
                if _matches(row, filters):
                    old = dict(row)
                    row.update(patch)
                    changes.append((old, dict(row)))
        for old, new in changes:
            self._notify(ChangeEvent(table=table, event_type=EventType.UPDATE, new=dict(new), old=old))
        return [new for _, new in changes]

    async def delete(self, table: Table, filters: Filters) -> List[Row]:
        table = Table(table)
        self._check("delete", table)
        async with self._lock:
            rows = self._writable(table)
            removed = [r for r in rows if _matches(r, filters)]
            rows[:] = [r for r in rows if not _matches(r, filters)]
        for row in removed:
            self._notify(ChangeEvent(table=table, event_type=EventType.DELETE, old=dict(row)))
        return removed

    # Realtime

    async def subscribe(
        self,
        table: Table,
        event: EventType,
        handler: EventHandler,
        on_status: Optional[StatusHandler] = None,
    ) -> Subscription:
        table = Table(table)
        self._check("subscribe", table)
        subscription = Subscription(table=table, event=EventType(event), handler=handler, on_status=on_status)
        self._subscriptions.append(subscription)
        logger.info("subscription_started", table=table.value, event_type=subscription.event.value)
        if on_status is not None:
            on_status(SubscriptionStatus.SUBSCRIBED)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        if not subscription.active:
            return
        subscription.active = False
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        logger.info("subscription_removed", table=subscription.table.value)
        if subscription.on_status is not None:
            subscription.on_status(SubscriptionStatus.CLOSED)

    def _notify(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.matches(event.table, event.event_type):
                continue
            try:
                subscription.handler(event)
            except Exception as e:
                # One broken subscriber must not fail the write for everyone
                logger.error(
                    "subscriber_error",
                    table=event.table.value,
                    event_type=event.event_type.value,
                    error=str(e),
                )
