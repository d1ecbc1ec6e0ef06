"""Test suite for the live synchronization engine."""

import asyncio
from uuid import uuid4

import pytest
import pytest_asyncio

from conftest import at
from skill_swap_chat.config import Settings
from skill_swap_chat.domain.models import Table
from skill_swap_chat.repositories.base import ChangeEvent, EventType, SubscriptionStatus
from skill_swap_chat.services.live_sync import ChannelState, LiveSyncEngine
from skill_swap_chat.services.messages import MessageStoreAdapter
from skill_swap_chat.services.state import SessionState


class RefreshCounter:
    """Stands in for the conversation-list recomputation."""

    def __init__(self) -> None:
        self.calls = 0
        self.gate = None

    async def __call__(self) -> None:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()


@pytest.fixture
def refresh() -> RefreshCounter:
    return RefreshCounter()


@pytest_asyncio.fixture
async def engine(store, refresh):
    engine = LiveSyncEngine(
        store, SessionState(), refresh, Settings(reconnect_delay=0, reconnect_attempts=3)
    )
    await engine.start()
    yield engine
    await engine.stop()


@pytest_asyncio.fixture
async def thread(engine, seed):
    """A thread the engine's session has open."""
    alice = await seed.user("Alice")
    bob = await seed.user("Bob")
    request_id = await seed.request(alice, await seed.skill(bob))
    engine.state.replace_thread(request_id, [])
    return alice, bob, request_id


async def until(predicate, timeout: float = 0.2) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0)

    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_both_channels_active_after_start(store, engine):
    """Starting subscribes the message and barter-request channels."""
    assert engine.connected
    assert [c.state for c in engine.channels] == [ChannelState.ACTIVE, ChannelState.ACTIVE]
    assert store.active_subscriptions == 2
    assert engine.messages_channel.handle.event == EventType.INSERT
    assert engine.requests_channel.handle.event == EventType.ALL


@pytest.mark.asyncio
async def test_inserted_message_lands_in_thread(engine, refresh, seed, thread):
    """A remote insert is merged into the thread and triggers a refresh."""
    alice, bob, request_id = thread
    message_id = await seed.message(request_id, bob, "Hello Alice")
    await engine.wait_idle()

    assert [m.id for m in engine.state.thread(request_id)] == [message_id]
    assert refresh.calls >= 1


@pytest.mark.asyncio
async def test_duplicate_delivery_is_idempotent(store, engine, seed, thread):
    """The same insert event delivered twice leaves one copy."""
    alice, bob, request_id = thread
    await seed.message(request_id, bob, "only once")
    row = (await store.query(Table.MESSAGES, {"barter_request_id": request_id}))[0]
    replay = ChangeEvent(table=Table.MESSAGES, event_type=EventType.INSERT, new=row)

    engine.messages_channel.handle.handler(replay)
    engine.messages_channel.handle.handler(replay)
    await engine.wait_idle()

    assert len(engine.state.thread(request_id)) == 1


@pytest.mark.asyncio
async def test_event_without_thread_is_discarded(engine, refresh):
    """Message events lacking a barter request id are dropped."""
    orphan = {"id": uuid4(), "sender_id": uuid4(), "content": "lost", "created_at": at(1)}
    engine.messages_channel.handle.handler(
        ChangeEvent(table=Table.MESSAGES, event_type=EventType.INSERT, new=orphan)
    )
    await engine.wait_idle()

    assert engine.state.loaded_threads == []
    assert refresh.calls == 0


@pytest.mark.asyncio
async def test_out_of_order_events_are_sorted(engine, seed, thread):
    """Late-arriving older messages are placed by timestamp."""
    alice, bob, request_id = thread
    await seed.message(request_id, bob, "second", created_at=at(2))
    await seed.message(request_id, alice, "third", created_at=at(3))
    await seed.message(request_id, bob, "first", created_at=at(1))
    await engine.wait_idle()

    assert [m.content for m in engine.state.thread(request_id)] == ["first", "second", "third"]


@pytest.mark.asyncio
async def test_barter_request_changes_trigger_refresh(store, engine, refresh, seed, thread):
    """Inserts, updates and deletes of barter requests all recompute the list."""
    alice, bob, request_id = thread
    await engine.wait_idle()

    for change in (
        store.update(Table.BARTER_REQUESTS, {"id": request_id}, {"status": "accepted"}),
        store.delete(Table.BARTER_REQUESTS, {"id": request_id}),
    ):
        before = refresh.calls
        await change
        await engine.wait_idle()
        assert refresh.calls == before + 1


@pytest.mark.asyncio
async def test_refresh_requests_coalesce(engine, refresh):
    """Triggers during an in-flight refresh collapse into one follow-up run."""
    refresh.gate = asyncio.Event()
    engine.request_refresh()
    for _ in range(3):
        await asyncio.sleep(0)
    assert refresh.calls == 1

    for _ in range(5):
        engine.request_refresh()
    refresh.gate.set()
    await engine.wait_idle()

    assert refresh.calls == 2


@pytest.mark.asyncio
async def test_resubscribes_after_channel_drop(store, engine, seed, thread):
    """A dropped channel is re-subscribed and keeps delivering."""
    alice, bob, request_id = thread
    first_handle = engine.messages_channel.handle

    assert store.drop_subscriptions(SubscriptionStatus.CHANNEL_ERROR) == 2
    await engine.wait_idle()

    assert engine.connected
    assert store.active_subscriptions == 2
    assert engine.messages_channel.handle is not first_handle

    await seed.message(request_id, bob, "after reconnect")
    await engine.wait_idle()
    assert [m.content for m in engine.state.thread(request_id)] == ["after reconnect"]


@pytest.mark.asyncio
async def test_replay_after_reconnect_is_safe(store, engine, seed, thread):
    """Events replayed on the new subscription do not duplicate messages."""
    alice, bob, request_id = thread
    await seed.message(request_id, bob, "before drop")
    await engine.wait_idle()
    row = (await store.query(Table.MESSAGES, {"barter_request_id": request_id}))[0]

    store.drop_subscriptions(SubscriptionStatus.TIMED_OUT)
    await engine.wait_idle()
    engine.messages_channel.handle.handler(
        ChangeEvent(table=Table.MESSAGES, event_type=EventType.INSERT, new=row)
    )
    await engine.wait_idle()

    assert len(engine.state.thread(request_id)) == 1


@pytest.mark.asyncio
async def test_channel_stays_in_error_when_store_refuses(store, engine):
    """Reconnect gives up after the configured attempts."""
    store.fail("subscribe")
    store.drop_subscriptions()
    await engine.wait_idle()

    assert [c.state for c in engine.channels] == [ChannelState.ERROR, ChannelState.ERROR]
    assert store.calls.count(("subscribe", "messages")) == 1 + 3
    assert store.active_subscriptions == 0


@pytest.mark.asyncio
async def test_stop_releases_subscriptions(store, refresh):
    """Stopping unsubscribes both channels and ignores later events."""
    engine = LiveSyncEngine(store, SessionState(), refresh, Settings(reconnect_delay=0))
    await engine.start()
    await engine.stop()

    assert store.active_subscriptions == 0
    assert [c.state for c in engine.channels] == [ChannelState.DISCONNECTED, ChannelState.DISCONNECTED]
    assert not engine.running
    # stopping twice is harmless
    await engine.stop()


@pytest.mark.asyncio
async def test_start_without_store_leaves_channels_in_error(store, refresh):
    """An unreachable store at start-up does not leak subscriptions."""
    store.fail("subscribe", "barter_requests")
    engine = LiveSyncEngine(store, SessionState(), refresh, Settings(reconnect_delay=0, reconnect_attempts=2))
    await engine.start()
    try:
        assert engine.messages_channel.state == ChannelState.ACTIVE
        assert engine.requests_channel.state == ChannelState.ERROR
        assert not engine.connected
    finally:
        await engine.stop()
    assert store.active_subscriptions == 0


@pytest.mark.asyncio
async def test_local_submit_merges_once(store, engine, seed, thread):
    """A locally sent message and its remote echo produce one entry."""
    alice, bob, request_id = thread
    result = await MessageStoreAdapter(store).append(request_id, alice, "from this device")
    engine.submit(result.message)
    await engine.wait_idle()

    assert [m.id for m in engine.state.thread(request_id)] == [result.message.id]


@pytest.mark.asyncio
async def test_messages_for_unknown_threads_are_not_merged(store, engine, refresh, seed, thread):
    """Other users' threads never enter the state; the list is still refreshed."""
    carol = await seed.user("Carol")
    dave = await seed.user("Dave")
    private = await seed.request(carol, await seed.skill(dave))
    await engine.wait_idle()
    updates = engine.state.add_listener()
    before = refresh.calls

    await seed.message(private, dave, "just between us")
    await engine.wait_idle()

    assert engine.state.thread(private) == []
    assert private not in engine.state.loaded_threads
    assert updates.empty()
    assert refresh.calls == before + 1


@pytest.mark.asyncio
async def test_reconnect_backoff_does_not_block_other_channel(store, refresh, seed):
    """Messages keep flowing while the barter channel waits to re-subscribe."""
    engine = LiveSyncEngine(store, SessionState(), refresh, Settings(reconnect_delay=0.5, reconnect_attempts=3))
    await engine.start()
    try:
        alice = await seed.user("Alice")
        bob = await seed.user("Bob")
        request_id = await seed.request(alice, await seed.skill(bob))
        engine.state.replace_thread(request_id, [])

        store.fail("subscribe", "barter_requests")
        assert store.drop_subscriptions(table=Table.BARTER_REQUESTS) == 1
        await until(lambda: engine.requests_channel.state == ChannelState.ERROR)

        await seed.message(request_id, bob, "still here")
        await until(lambda: len(engine.state.thread(request_id)) == 1)

        assert engine.messages_channel.state == ChannelState.ACTIVE
        assert engine.requests_channel.state != ChannelState.ACTIVE
    finally:
        await engine.stop()
    assert store.active_subscriptions == 0
