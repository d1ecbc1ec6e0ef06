"""Live synchronization of messages and barter requests.

Store callbacks never touch session state. They only enqueue events; a
single reconciliation task applies them, so the idempotent merge has one
writer. Conversation-list refreshes run in a separate task and coalesce:
triggers that arrive while a refresh is running produce one more run.
A dropped channel is re-subscribed from its own task and never holds up
events arriving on the other channel.

Only messages for threads the session already knows about are merged.
Anything else just triggers a refresh of the conversation list.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog
from pydantic import ValidationError as ModelValidationError

from ..config import Settings
from ..domain.errors import StoreError
from ..domain.models import Message, Table
from ..repositories.base import (
    ChangeEvent,
    EventType,
    StoreGateway,
    Subscription,
    SubscriptionStatus,
)
from .state import SessionState

logger = structlog.get_logger()


class ChannelState(str, Enum):
    DISCONNECTED = "disconnected"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    ERROR = "error"


@dataclass(eq=False)
class Channel:
    """One realtime subscription and its lifecycle state."""

    name: str
    table: Table
    event: EventType
    state: ChannelState = ChannelState.DISCONNECTED
    handle: Optional[Subscription] = None
    generation: int = 0  # bumped on every (re)subscribe; older callbacks are stale


@dataclass(frozen=True)
class _Dropped:
    generation: int
    status: SubscriptionStatus


class LiveSyncEngine:
    """Keeps a :class:`SessionState` in step with store change events."""

    def __init__(
        self,
        store: StoreGateway,
        state: SessionState,
        refresh: Callable[[], Awaitable[Any]],
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.state = state
        self._refresh = refresh
        self.settings = settings or Settings()
        self.messages_channel = Channel("messages-realtime", Table.MESSAGES, EventType.INSERT)
        self.requests_channel = Channel("barter-realtime", Table.BARTER_REQUESTS, EventType.ALL)
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []
        self._reconnects: Dict[str, asyncio.Task] = {}
        self._refresh_wanted: Optional[asyncio.Event] = None
        self._refreshing = False
        self._running = False

    @property
    def channels(self) -> Tuple[Channel, Channel]:
        return (self.messages_channel, self.requests_channel)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def connected(self) -> bool:
        return all(c.state == ChannelState.ACTIVE for c in self.channels)

    async def start(self) -> None:
        """Start the worker tasks and subscribe both channels."""
        if self._running:
            return
        self._running = True
        self._queue = asyncio.Queue()
        self._refresh_wanted = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._reconcile_loop()),
            asyncio.create_task(self._refresh_loop()),
        ]
        try:
            for channel in self.channels:
                await self._connect(channel)
        except BaseException:
            await self.stop()
            raise
        logger.info("live_sync_started", connected=self.connected)

    async def stop(self) -> None:
        """Unsubscribe both channels and stop the worker tasks."""
        if not self._running:
            return
        self._running = False
        reconnects = list(self._reconnects.values())
        for task in reconnects:
            task.cancel()
        await asyncio.gather(*reconnects, return_exceptions=True)
        try:
            for channel in self.channels:
                await self._disconnect(channel)
        finally:
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
        logger.info("live_sync_stopped")

    def submit(self, message: Message) -> None:
        """Feed a locally sent message through the same merge path as remote events."""
        if not self._running:
            self.state.merge_message(message)
            return
        event = ChangeEvent(table=Table.MESSAGES, event_type=EventType.INSERT, new=message.model_dump())
        self._queue.put_nowait((self.messages_channel, event))

    def request_refresh(self) -> None:
        """Ask for a conversation-list recomputation; coalesces with pending ones."""
        if self._refresh_wanted is not None:
            self._refresh_wanted.set()

    async def wait_idle(self) -> None:
        """Wait until queued events, reconnects and pending refreshes are done."""
        while self._running and self._queue is not None:
            await self._queue.join()
            if self._reconnects:
                await asyncio.gather(*list(self._reconnects.values()), return_exceptions=True)
            elif self._refresh_wanted.is_set() or self._refreshing:
                await asyncio.sleep(0)
            elif self._queue.empty():
                return

    # Subscription lifecycle

    async def _connect(self, channel: Channel) -> bool:
        attempts = max(1, self.settings.reconnect_attempts)
        for attempt in range(1, attempts + 1):
            if not self._running:
                return False
            channel.generation += 1
            channel.state = ChannelState.SUBSCRIBING
            try:
                channel.handle = await self.store.subscribe(
                    channel.table,
                    channel.event,
                    partial(self._on_event, channel, channel.generation),
                    partial(self._on_status, channel, channel.generation),
                )
            except StoreError as e:
                channel.state = ChannelState.ERROR
                logger.warning("channel_subscribe_failed", channel=channel.name, attempt=attempt, error=str(e))
                if attempt < attempts:
                    await asyncio.sleep(self.settings.reconnect_delay)
                continue
            if not self._running:
                # stop() ran while the subscribe request was in flight
                await self._disconnect(channel)
                return False
            channel.state = ChannelState.ACTIVE
            logger.info("channel_active", channel=channel.name, attempt=attempt)
            return True
        logger.error("channel_unavailable", channel=channel.name, attempts=attempts)
        return False

    async def _disconnect(self, channel: Channel) -> None:
        handle, channel.handle = channel.handle, None
        channel.generation += 1
        channel.state = ChannelState.DISCONNECTED
        if handle is None:
            return
        try:
            await self.store.unsubscribe(handle)
        except StoreError as e:
            logger.warning("channel_unsubscribe_failed", channel=channel.name, error=str(e))

    def _schedule_reconnect(self, channel: Channel, dropped: _Dropped) -> None:
        if dropped.generation != channel.generation or channel.name in self._reconnects:
            return
        channel.handle = None
        channel.state = ChannelState.ERROR
        logger.warning("channel_dropped", channel=channel.name, status=dropped.status.value)
        task = asyncio.create_task(self._reconnect(channel))
        self._reconnects[channel.name] = task

    async def _reconnect(self, channel: Channel) -> None:
        # Replayed events are harmless: merges are idempotent on message id
        try:
            await self._connect(channel)
        finally:
            self._reconnects.pop(channel.name, None)

    # Store callbacks: enqueue only

    def _on_event(self, channel: Channel, generation: int, event: ChangeEvent) -> None:
        if self._running and generation == channel.generation:
            self._queue.put_nowait((channel, event))

    def _on_status(self, channel: Channel, generation: int, status: SubscriptionStatus) -> None:
        if status == SubscriptionStatus.SUBSCRIBED:
            return
        if self._running and generation == channel.generation:
            self._queue.put_nowait((channel, _Dropped(generation, status)))

    # Workers

    async def _reconcile_loop(self) -> None:
        while True:
            channel, item = await self._queue.get()
            try:
                if isinstance(item, _Dropped):
                    self._schedule_reconnect(channel, item)
                elif channel is self.messages_channel:
                    self._apply_message(item)
                else:
                    self._apply_request_change(item)
            except Exception as e:
                logger.error("sync_event_failed", channel=channel.name, error=str(e))
            finally:
                self._queue.task_done()

    def _apply_message(self, event: ChangeEvent) -> None:
        row = event.new or {}
        if row.get("barter_request_id") is None:
            logger.warning("message_event_discarded", reason="no barter_request_id", message_id=str(row.get("id")))
            return
        try:
            message = Message.model_validate(row)
        except ModelValidationError as e:
            logger.warning("message_event_discarded", reason="malformed", error=str(e))
            return
        if not self.state.tracks(message.barter_request_id):
            # Possibly a thread this user just joined; the refresh will list it
            logger.debug("message_event_out_of_scope", conversation_id=str(message.barter_request_id))
            self.request_refresh()
            return
        if self.state.merge_message(message):
            logger.debug("message_merged", conversation_id=str(message.barter_request_id), message_id=str(message.id))
        self.request_refresh()

    def _apply_request_change(self, event: ChangeEvent) -> None:
        row = event.new or event.old or {}
        logger.debug("barter_request_changed", event_type=event.event_type.value, conversation_id=str(row.get("id")))
        self.request_refresh()

    async def _refresh_loop(self) -> None:
        while True:
            await self._refresh_wanted.wait()
            self._refresh_wanted.clear()
            self._refreshing = True
            try:
                await self._refresh()
            except Exception as e:
                logger.error("conversation_refresh_failed", error=str(e))
            finally:
                self._refreshing = False
