"""
Shared fixtures for the chat service tests.

Timers never really run here: the tracker and the service get a ManualScheduler,
and typing staleness is checked against a FakeClock the tests move by hand.
"""
from datetime import datetime, timedelta, timezone

import pytest
from starlette.websockets import WebSocketState

from broadcast import Connection, RoomRegistry
from database import MemoryStore
from presence import TypingTracker
from service import ChatService
from sessions import SessionTable


class ManualTimer:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.fired = True
        self.callback()


class ManualScheduler:
    def __init__(self):
        self.timers = []

    def call_later(self, delay, callback):
        timer = ManualTimer(delay, callback)
        self.timers.append(timer)
        return timer

    def pending(self):
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def fire_all(self):
        for timer in self.pending():
            timer.fire()


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakeWebSocket:
    """Stands in for a Starlette WebSocket: records what is written to it"""

    def __init__(self, fail=False):
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.sent = []
        self.fail = fail

    async def send_text(self, data):
        if self.fail:
            raise RuntimeError("socket is gone")
        self.sent.append(data)

    def close(self):
        self.client_state = WebSocketState.DISCONNECTED


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker(store, scheduler, clock):
    return TypingTracker(store, scheduler=scheduler, clock=clock, clear_after=3.0, stale_after=5.0)


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.fixture
def service(store, registry, tracker, scheduler):
    return ChatService(
        store=store,
        registry=registry,
        tracker=tracker,
        sessions=SessionTable(),
        scheduler=scheduler,
        delivery_delay=1.0,
    )


def make_user(store, username, password="secret123"):
    return store.create_user({
        "username": username,
        "display_name": username.title(),
        "password": password,
    })


@pytest.fixture
def alice(store):
    return make_user(store, "alice")


@pytest.fixture
def bob(store):
    return make_user(store, "bob")


@pytest.fixture
def carol(store):
    return make_user(store, "carol")


@pytest.fixture
def room(store, alice, bob):
    """A group room with alice and bob as members (carol is left out)."""
    room = store.create_room({"name": "General", "description": "Team chat"})
    store.add_member(alice.id, room.id)
    store.add_member(bob.id, room.id)
    return room


def connect(user_id=None, fail=False):
    return Connection(FakeWebSocket(fail=fail), user_id)
