"""
Tests for the client side: id-based merging, push event handling and the
reconnect policy.
"""
import asyncio
import json
from datetime import timedelta

import httpx
import pytest

from client import CONNECTED, DISCONNECTED, FAILED, ChatApi, MessageLog, PushChannel, RoomSession, backoff_delay
from database import MemoryStore
from errors import AccessError, AuthError
from events import (
    MessageStatusEvent,
    NewMessageEvent,
    TypingStatusEvent,
    UserJoinedEvent,
    UserLeftEvent,
)
from main import build_service, create_app
from schemas import MessageStatus, MessageWithSender, PublicUser


def make_message(message_id, content="hi", seconds=0, room_id="r1"):
    sender = PublicUser(id="u1", username="alice", display_name="Alice")
    return MessageWithSender(
        id=message_id,
        content=content,
        sender_id=sender.id,
        room_id=room_id,
        timestamp=sender.last_seen + timedelta(seconds=seconds),
        sender=sender,
    )


class FakeSocket:
    def __init__(self, frames=()):
        self.frames = list(frames)
        self.sent = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for frame in self.frames:
            yield frame

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        pass


class ScriptedConnect:
    """Hands out the scripted sockets in order, refusing once they run out"""

    def __init__(self, *script):
        self.script = list(script)
        self.uris = []

    def __call__(self, uri):
        self.uris.append(uri)
        step = self.script.pop(0) if self.script else None
        if step is None:
            raise OSError("connection refused")
        return step


# =============================================================================
# MessageLog
# =============================================================================


class TestMessageLog:
    def test_merge_skips_known_id(self):
        log = MessageLog()

        assert log.merge(make_message("m1")) is True
        assert log.merge(make_message("m1", content="edited elsewhere")) is False

        assert len(log) == 1
        assert log.get("m1").content == "hi"

    def test_same_content_different_ids_are_kept(self):
        log = MessageLog()
        log.merge(make_message("m1", content="ok"))
        log.merge(make_message("m2", content="ok"))

        assert len(log) == 2

    def test_ordered_by_timestamp(self):
        log = MessageLog()
        log.merge(make_message("late", seconds=5))
        log.merge(make_message("early", seconds=1))

        assert [m.id for m in log.messages] == ["early", "late"]

    def test_page_merge_refreshes_status(self):
        log = MessageLog()
        log.merge(make_message("m1"))
        fetched = make_message("m1")
        fetched.status = MessageStatus.DELIVERED

        added = log.merge_page([fetched, make_message("m2", seconds=1)])

        assert added == 1
        assert log.get("m1").status == MessageStatus.DELIVERED
        assert "m2" in log

    def test_apply_status(self):
        log = MessageLog()
        log.merge(make_message("m1"))

        assert log.apply_status("m1", MessageStatus.DELIVERED) is True
        assert log.apply_status("missing", MessageStatus.DELIVERED) is False
        assert log.get("m1").status == MessageStatus.DELIVERED


# =============================================================================
# RoomSession event handling
# =============================================================================


@pytest.fixture
def session():
    me = PublicUser(id="me", username="me", display_name="Me")
    activity = []
    session = RoomSession(ChatApi(client=httpx.AsyncClient()), "r1", me, on_activity=lambda u, a: activity.append((u, a)))
    session.activity = activity
    return session


class TestRoomSessionEvents:
    def test_own_message_echo_is_deduplicated(self, session):
        message = make_message("m1")
        session.log.merge_page([message])

        asyncio.run(session.handle_event(NewMessageEvent(message=message)))

        assert len(session.log) == 1

    def test_message_for_other_room_ignored(self, session):
        asyncio.run(session.handle_event(NewMessageEvent(message=make_message("m1", room_id="r2"))))
        assert len(session.log) == 0

    def test_status_event(self, session):
        session.log.merge(make_message("m1"))

        asyncio.run(session.handle_event(
            MessageStatusEvent(message_id="m1", room_id="r1", status=MessageStatus.DELIVERED)
        ))

        assert session.log.get("m1").status == MessageStatus.DELIVERED

    def test_typing_events(self, session):
        async def run():
            await session.handle_event(TypingStatusEvent(user_id="u2", room_id="r1", is_typing=True))
            await session.handle_event(TypingStatusEvent(user_id="me", room_id="r1", is_typing=True))
        asyncio.run(run())
        assert session.typing == {"u2"}

        asyncio.run(session.handle_event(TypingStatusEvent(user_id="u2", room_id="r1", is_typing=False)))
        assert session.typing == set()

    def test_activity_events(self, session):
        async def run():
            await session.handle_event(UserJoinedEvent(user_id="u2", room_id="r1"))
            await session.handle_event(TypingStatusEvent(user_id="u2", room_id="r1", is_typing=True))
            await session.handle_event(UserLeftEvent(user_id="u2", room_id="r1"))
        asyncio.run(run())

        assert session.activity == [("u2", "joined"), ("u2", "left")]
        assert session.typing == set()


# =============================================================================
# PushChannel
# =============================================================================


class TestPushChannel:
    def test_backoff_schedule(self):
        assert [backoff_delay(i, 1.0) for i in range(5)] == [1, 2, 4, 8, 16]

    def test_gives_up_after_five_attempts(self):
        delays = []

        async def sleep(delay):
            delays.append(delay)

        async def on_event(event):
            pass

        connect = ScriptedConnect()
        channel = PushChannel("ws://chat/ws", "tok", "r1", "u1", on_event, connect=connect, sleep=sleep)

        asyncio.run(channel.run())

        assert delays == [1, 2, 4, 8, 16]
        assert len(connect.uris) == 6
        assert connect.uris[0] == "ws://chat/ws?token=tok"
        assert channel.state == FAILED

    def test_reconnect_starts_fresh(self):
        delays = []

        async def sleep(delay):
            delays.append(delay)

        async def on_event(event):
            pass

        async def run():
            channel = PushChannel(
                "ws://chat/ws", "tok", "r1", "u1", on_event,
                connect=ScriptedConnect(), sleep=sleep, max_attempts=2,
            )
            await channel.run()
            assert channel.state == FAILED
            await channel.reconnect()
            return channel

        channel = asyncio.run(run())

        assert delays == [1, 2, 1, 2]
        assert channel.state == FAILED

    def test_joins_and_dispatches(self):
        received = []
        delays = []

        async def sleep(delay):
            delays.append(delay)

        async def on_event(event):
            received.append(event)

        socket = FakeSocket([
            json.dumps({"type": "user_joined", "userId": "u2", "roomId": "r1"}),
            "garbage",
            json.dumps({"type": "typing_status", "userId": "u2", "roomId": "r1", "isTyping": True}),
        ])
        connect = ScriptedConnect(None, socket)
        channel = PushChannel(
            "ws://chat/ws", "tok", "r1", "u1", on_event, connect=connect, sleep=sleep, max_attempts=2,
        )

        asyncio.run(channel.run())

        assert socket.sent == [{"type": "join_room", "roomId": "r1", "userId": "u1"}]
        assert [type(e) for e in received] == [UserJoinedEvent, TypingStatusEvent]
        # the successful connect reset the attempt counter
        assert delays == [1, 1, 2]

    def test_handler_error_does_not_kill_channel(self):
        delays = []
        seen = []

        async def sleep(delay):
            delays.append(delay)

        async def on_event(event):
            seen.append(event)
            raise RuntimeError("handler bug")

        socket = FakeSocket([
            json.dumps({"type": "user_joined", "userId": "u2", "roomId": "r1"}),
            json.dumps({"type": "user_left", "userId": "u2", "roomId": "r1"}),
        ])
        channel = PushChannel(
            "ws://chat/ws", "tok", "r1", "u1", on_event,
            connect=ScriptedConnect(socket), sleep=sleep, max_attempts=2,
        )

        asyncio.run(channel.run())

        assert [type(e) for e in seen] == [UserJoinedEvent, UserLeftEvent]
        assert delays == [1, 2]
        assert channel.state == FAILED

    def test_unexpected_error_leaves_channel_disconnected(self):
        async def on_event(event):
            pass

        def connect(uri):
            raise ValueError("bad uri")

        channel = PushChannel("ws://chat/ws", "tok", "r1", "u1", on_event, connect=connect)

        with pytest.raises(ValueError):
            asyncio.run(channel.run())
        assert channel.state == DISCONNECTED

    def test_send_while_disconnected(self):
        async def on_event(event):
            pass

        channel = PushChannel("ws://chat/ws", "tok", "r1", "u1", on_event)

        assert asyncio.run(channel.send_typing(True)) is False
        assert channel.state != CONNECTED


# =============================================================================
# ChatApi against the real app
# =============================================================================


def run_against_app(scenario):
    service = build_service(MemoryStore())
    service.delivery_delay = 60
    app = create_app(service)

    async def run():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            await scenario(http)
        service.shutdown()

    asyncio.run(run())


class TestChatApi:
    def test_send_then_push_echo_shows_once(self):
        async def scenario(http):
            api = ChatApi(client=http)
            me = await api.signup("alice", "Alice", "secret123")
            room = (await api.list_rooms())[0]
            session = RoomSession(api, room.id, me)

            sent = await session.send("hello")
            await session.handle_event(NewMessageEvent(message=sent))
            await session.refresh()

            assert [m.id for m in session.log.messages] == [sent.id]
            assert session.log.get(sent.id).sender.id == me.id

        run_against_app(scenario)

    def test_typing_falls_back_to_api(self):
        async def scenario(http):
            alice_api = ChatApi(client=http)
            bob_api = ChatApi(client=http)
            alice = await alice_api.signup("alice", "Alice", "secret123")
            await bob_api.signup("bob", "Bob", "secret123")
            room = (await alice_api.list_rooms())[0]
            await alice_api.add_member(room.id, "bob")

            session = RoomSession(alice_api, room.id, alice)
            await session.set_typing(True)

            assert [u.id for u in await bob_api.list_typing(room.id)] == [alice.id]

            await session.send("done typing")
            assert await bob_api.list_typing(room.id) == []

        run_against_app(scenario)

    def test_errors_are_typed(self):
        async def scenario(http):
            alice_api = ChatApi(client=http)
            await alice_api.signup("alice", "Alice", "secret123")
            room = (await alice_api.list_rooms())[0]

            mallory_api = ChatApi(client=http)
            await mallory_api.signup("mallory", "Mallory", "secret123")
            with pytest.raises(AccessError):
                await mallory_api.list_messages(room.id)

            await mallory_api.logout()
            with pytest.raises(AuthError):
                await mallory_api.me()

        run_against_app(scenario)
