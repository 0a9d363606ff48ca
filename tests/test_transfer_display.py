import asyncio
import json

import pytest

from app.core.errors import NoActiveSession, NotFound
from app.services.auth_service import DeviceIdentity
from app.services.qr_service import QRService
from app.services.sessions import TransferSessionManager, utc_now
from app.services.transfer_display import SubscriptionRegistry, TransferDisplayCoordinator, format_time


class Recorder:
    def __init__(self):
        self.calls = 0

    def __call__(self):
        self.calls += 1


async def wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
async def displays():
    created = []
    yield created
    for display in created:
        display.close()
    # Let cancelled countdowns finish
    await asyncio.sleep(0)


@pytest.fixture
def make_display(store, displays, clock):
    def make(manager, **kwargs):
        kwargs.setdefault("clock", clock)
        display = TransferDisplayCoordinator(manager, store, **kwargs)
        displays.append(display)
        return display

    return make


async def test_generate_renders_and_subscribes(manager, store, make_display):
    display = make_display(manager)

    state = await display.generate()

    assert state is display.state
    assert json.loads(state.payload)["token"] == state.session_token
    assert state.qr_image
    assert state.session_token in display.subscriptions
    assert store.subscriber_count(state.session_token) == 1
    assert display.loading is False
    assert display.error is None


async def test_rendered_bytes_never_carry_credential(manager, alice, make_display):
    rendered = []

    def render(data: bytes) -> str:
        rendered.append(data)
        return QRService.create_qr_image(data)

    display = make_display(manager, render=render)
    state = await display.generate()

    assert len(rendered) == 1
    assert alice.session.refresh_token.encode() not in rendered[0]
    assert set(json.loads(rendered[0])) == {"token", "version", "timestamp"}
    assert json.loads(rendered[0])["token"] == state.session_token


async def test_consumption_notifies_exactly_once(manager, consumer_manager, store, make_display):
    recorder = Recorder()
    display = make_display(manager, on_authenticated=recorder)
    state = await display.generate()

    await consumer_manager.validate_and_consume(state.session_token)

    assert recorder.calls == 1
    assert display.authenticated is True
    assert len(display.subscriptions) == 0
    assert store.subscriber_count(state.session_token) == 0

    # A stray second event changes nothing
    await store.update_consumed(state.session_token, consumer_manager._now())
    assert recorder.calls == 1


async def test_regenerate_drops_previous_subscription(manager, consumer_manager, store, make_display):
    recorder = Recorder()
    display = make_display(manager, on_authenticated=recorder)
    first = await display.generate()
    second = await display.generate()

    assert store.subscriber_count(first.session_token) == 0
    assert store.subscriber_count(second.session_token) == 1
    assert len(display.subscriptions) == 1

    with pytest.raises(NotFound):
        await consumer_manager.validate_and_consume(first.session_token)
    assert recorder.calls == 0

    await consumer_manager.validate_and_consume(second.session_token)
    assert recorder.calls == 1


async def test_close_is_idempotent(manager, store, make_display):
    display = make_display(manager)
    state = await display.generate()

    display.close()
    display.close()

    assert display.closed is True
    assert store.subscriber_count(state.session_token) == 0
    assert await display.generate() is None


async def test_expired_code_is_refreshed(store, alice, consumer_manager, make_display):
    manager = TransferSessionManager(store, identity=alice, ttl_seconds=0.05, backoff_ms=0)
    display = make_display(manager, clock=utc_now)
    first = await display.generate()

    await wait_for(lambda: display.state is not None and display.state.session_token != first.session_token)

    assert store.subscriber_count(first.session_token) == 0
    assert store.subscriber_count(display.state.session_token) == 1
    row = await store.select_by_owner("alice")
    assert row.session_token == display.state.session_token


async def test_consumed_code_is_not_refreshed(store, alice, make_display):
    manager = TransferSessionManager(store, identity=alice, ttl_seconds=0.1, backoff_ms=0)
    consumer = TransferSessionManager(store, backoff_ms=0)
    recorder = Recorder()
    display = make_display(manager, on_authenticated=recorder, clock=utc_now)
    state = await display.generate()

    await consumer.validate_and_consume(state.session_token)
    await asyncio.sleep(0.25)

    assert recorder.calls == 1
    assert display.state.session_token == state.session_token
    assert (await store.select_by_owner("alice")).consumed is True


async def test_generate_failure_sets_user_message(store, auth, clock, make_display):
    manager = TransferSessionManager(store, identity=DeviceIdentity(auth), clock=clock)
    display = make_display(manager)

    assert await display.generate() is None
    assert display.error == NoActiveSession.user_message
    assert display.state is None
    assert display.loading is False
    assert len(display.subscriptions) == 0


async def test_result_after_close_is_discarded(store, alice, clock, make_display):
    release = asyncio.Event()

    class SlowStore:
        async def insert_or_replace(self, record):
            await release.wait()
            await store.insert_or_replace(record)

        def subscribe(self, token, on_change):
            return store.subscribe(token, on_change)

    manager = TransferSessionManager(SlowStore(), identity=alice, clock=clock, backoff_ms=0)
    display = make_display(manager)

    pending = asyncio.create_task(display.generate())
    await asyncio.sleep(0)
    display.close()
    release.set()

    assert await pending is None
    assert display.state is None
    assert len(display.subscriptions) == 0


async def test_overlapping_generates_display_the_live_code(store, alice, clock, consumer_manager, make_display):
    # First write is slower than the second
    delays = [0.05, 0]

    class LaggyStore:
        async def insert_or_replace(self, record):
            await asyncio.sleep(delays.pop(0))
            await store.insert_or_replace(record)

        def subscribe(self, token, on_change):
            return store.subscribe(token, on_change)

    manager = TransferSessionManager(LaggyStore(), identity=alice, clock=clock, backoff_ms=0)
    recorder = Recorder()
    display = make_display(manager, on_authenticated=recorder)

    first = asyncio.create_task(display.generate())
    await asyncio.sleep(0)
    state = await display.generate()

    assert await first is None
    live = await store.select_by_owner("alice")
    assert state.session_token == live.session_token
    assert display.state.session_token == live.session_token
    assert store.subscriber_count(live.session_token) == 1

    await consumer_manager.validate_and_consume(display.state.session_token)
    assert recorder.calls == 1


async def test_countdown_label(manager, clock, make_display):
    display = make_display(manager)
    assert display.seconds_remaining() == 0

    await display.generate()
    assert display.time_label() == "5:00"

    clock.advance(seconds=61)
    assert display.seconds_remaining() == 239
    assert display.time_label() == "3:59"


def test_format_time():
    assert format_time(300) == "5:00"
    assert format_time(59) == "0:59"
    assert format_time(-3) == "0:00"


def test_registry_replaces_subscription_for_same_token(store):
    registry = SubscriptionRegistry()
    first = store.subscribe("t" * 32, lambda row: None)
    second = store.subscribe("t" * 32, lambda row: None)

    registry.add("t" * 32, first)
    registry.add("t" * 32, second)

    assert first.active is False
    assert second.active is True
    assert len(registry) == 1

    registry.clear()
    assert second.active is False
    assert registry.remove("t" * 32) is False
