"""
Chat service: every mutation goes through here.

Each operation checks the caller against the store, applies the change, then
publishes the resulting event to the room's live connections. The acting user is
always the one resolved from the caller's session.
"""
import asyncio
import logging
from typing import Dict, List, Optional, Set, Tuple

import config
from broadcast import Connection, RoomRegistry
from database import MemoryStore
from errors import AccessError, AuthError, NotFoundError, ValidationError
from events import (
    ErrorEvent,
    JoinRoomFrame,
    MessageStatusEvent,
    NewMessageEvent,
    NewMessageFrame,
    TypingStatusEvent,
    TypingStatusFrame,
)
from presence import Scheduler, TimerHandle, TypingTracker
from schemas import ChatRoom, MessageStatus, MessageWithSender, PublicUser, RoomDetail, RoomSummary, User
from sessions import SessionTable

logger = logging.getLogger(__name__)


class ChatService:
    def __init__(
        self,
        store: MemoryStore,
        registry: RoomRegistry,
        tracker: TypingTracker,
        sessions: SessionTable,
        scheduler: Optional[Scheduler] = None,
        delivery_delay: float = config.MESSAGE_DELIVERY_DELAY,
    ):
        self.store = store
        self.registry = registry
        self.tracker = tracker
        self.sessions = sessions
        self.scheduler = scheduler or tracker.scheduler
        self.delivery_delay = delivery_delay
        self._deliveries: Dict[str, TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()
        tracker.on_expire = self._typing_expired

    # -----------------------------
    # Auth
    # -----------------------------

    def signup(self, username: str, display_name: str, password: str, confirm_password: str) -> Tuple[User, str]:
        if not (username or "").strip() or not (display_name or "").strip() or not password:
            raise ValidationError("All fields are required")
        if password != confirm_password:
            raise ValidationError("Passwords do not match")
        if len(password) < config.MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {config.MIN_PASSWORD_LENGTH} characters long"
            )

        user = self.store.create_user({
            "username": username,
            "display_name": display_name,
            "password": password,
            "is_online": True,
        })
        token = self.sessions.create(user.id)

        welcome = self.store.create_room(dict(config.WELCOME_ROOM))
        self.store.add_member(user.id, welcome.id)
        logger.info(f"Signed up '{user.username}' with welcome room {welcome.id}")
        return user, token

    def login(self, username: str, password: str) -> Tuple[User, str]:
        if not username or not password:
            raise ValidationError("Username and password are required")
        user = self.store.get_user_by_username(username)
        # Plaintext comparison; hashing is out of scope for this service
        if user is None or user.password != password:
            raise AuthError("Invalid username or password")
        token = self.sessions.create(user.id)
        self.store.set_user_online(user.id, True)
        logger.info(f"User '{username}' logged in")
        return self.store.get_user(user.id), token

    def logout(self, token: Optional[str]) -> None:
        user_id = self.sessions.revoke(token)
        if user_id:
            self.store.set_user_online(user_id, False)
            logger.info(f"User {user_id} logged out")

    def current_user(self, token: Optional[str]) -> User:
        user_id = self.sessions.resolve(token)
        user = self.store.get_user(user_id)
        if user is None:
            self.sessions.revoke(token)
            raise AuthError("User not found")
        return user

    def get_user(self, user_id: str) -> PublicUser:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user.public()

    # -----------------------------
    # Rooms
    # -----------------------------

    def _check_member(self, user_id: str, room_id: str) -> None:
        if not self.store.is_member(user_id, room_id):
            raise AccessError("Access denied")

    def list_rooms(self, user_id: str) -> List[RoomSummary]:
        return self.store.rooms_for_user(user_id)

    def room_detail(self, user_id: str, room_id: str) -> RoomDetail:
        self._check_member(user_id, room_id)
        return self.store.room_detail(room_id)

    def create_room(self, user_id: str, fields: dict) -> ChatRoom:
        room = self.store.create_room(fields)
        self.store.add_member(user_id, room.id)
        logger.info(f"User {user_id} created room '{room.name}' ({room.id})")
        return room

    def add_member(self, user_id: str, room_id: str, username: str) -> RoomDetail:
        self._check_member(user_id, room_id)
        invitee = self.store.get_user_by_username(username)
        if invitee is None:
            raise NotFoundError("User not found")
        self.store.add_member(invitee.id, room_id)
        return self.store.room_detail(room_id)

    # -----------------------------
    # Messages
    # -----------------------------

    def list_messages(self, user_id: str, room_id: str, limit: int, offset: int) -> List[MessageWithSender]:
        self._check_member(user_id, room_id)
        return self.store.messages_for_room(room_id, limit, offset)

    async def send_message(self, user_id: str, room_id: str, content: str) -> MessageWithSender:
        self._check_member(user_id, room_id)
        message = self.store.create_message({
            "content": content,
            "sender_id": user_id,
            "room_id": room_id,
        })
        self._schedule_delivery(message.id, room_id)
        # Everyone in the room gets it, the sender's own sockets included
        await self.registry.publish(room_id, NewMessageEvent(message=message))
        return message

    async def relay_message(self, user_id: str, room_id: str, message_id: str) -> MessageWithSender:
        """Re-publish a stored message; clients drop it if they already have the id."""
        self._check_member(user_id, room_id)
        message = self.store.get_message(message_id)
        if message is None or message.room_id != room_id:
            raise NotFoundError("Message not found")
        await self.registry.publish(room_id, NewMessageEvent(message=message))
        return message

    def _schedule_delivery(self, message_id: str, room_id: str) -> None:
        self._deliveries[message_id] = self.scheduler.call_later(
            self.delivery_delay, lambda: self._deliver(message_id, room_id)
        )

    def _deliver(self, message_id: str, room_id: str) -> None:
        self._deliveries.pop(message_id, None)
        self.store.update_message_status(message_id, MessageStatus.DELIVERED)
        event = MessageStatusEvent(message_id=message_id, room_id=room_id, status=MessageStatus.DELIVERED)
        self._publish_soon(room_id, event)

    def _publish_soon(self, room_id: str, event) -> None:
        """Publish from a timer callback, which cannot await."""
        task = asyncio.get_running_loop().create_task(self.registry.publish(room_id, event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # -----------------------------
    # Typing
    # -----------------------------

    async def set_typing(
        self, user_id: str, room_id: str, is_typing: bool, exclude: Optional[Connection] = None
    ) -> None:
        self._check_member(user_id, room_id)
        self.tracker.set_typing(user_id, room_id, is_typing)
        await self.registry.publish(
            room_id,
            TypingStatusEvent(user_id=user_id, room_id=room_id, is_typing=is_typing),
            exclude=exclude,
        )

    def _typing_expired(self, user_id: str, room_id: str) -> None:
        self._publish_soon(room_id, TypingStatusEvent(user_id=user_id, room_id=room_id, is_typing=False))

    def list_typing(self, user_id: str, room_id: str) -> List[PublicUser]:
        self._check_member(user_id, room_id)
        return self.tracker.typing_users(room_id, exclude=user_id)

    # -----------------------------
    # Push channel
    # -----------------------------

    async def handle_frame(self, connection: Connection, frame) -> None:
        """Apply one inbound frame from ``connection``; errors go back to that socket only."""
        try:
            if isinstance(frame, JoinRoomFrame):
                await self._join(connection, frame)
            elif isinstance(frame, NewMessageFrame):
                await self._new_message(connection, frame)
            elif isinstance(frame, TypingStatusFrame):
                room_id = self._joined_room(connection)
                await self.set_typing(connection.user_id, room_id, frame.is_typing, exclude=connection)
            else:
                raise ValidationError(f"Unsupported frame: {type(frame).__name__}")
        except (ValidationError, AccessError, NotFoundError, AuthError) as e:
            logger.debug(f"Rejected frame from {connection!r}: {e.message}")
            await connection.send(ErrorEvent(message=e.message))

    async def _join(self, connection: Connection, frame: JoinRoomFrame) -> None:
        if frame.user_id != connection.user_id:
            raise AuthError("userId does not match the session")
        self._check_member(connection.user_id, frame.room_id)
        await self.registry.join(connection, frame.room_id, connection.user_id)

    async def _new_message(self, connection: Connection, frame: NewMessageFrame) -> None:
        room_id = self._joined_room(connection)
        if frame.message is not None and frame.message.id:
            await self.relay_message(connection.user_id, room_id, frame.message.id)
            return
        content = frame.content or (frame.message.content if frame.message else None)
        if not content or not content.strip():
            raise ValidationError("Message content cannot be empty")
        await self.send_message(connection.user_id, room_id, content)

    def _joined_room(self, connection: Connection) -> str:
        if connection.room_id is None:
            raise ValidationError("Join a room first")
        return connection.room_id

    async def disconnect(self, connection: Connection) -> None:
        await self.registry.leave(connection)

    def shutdown(self) -> None:
        for handle in self._deliveries.values():
            handle.cancel()
        self._deliveries.clear()
        self.tracker.cancel_all()
