"""
In-memory entity store.

Holds users, rooms, memberships, messages and typing rows for the lifetime of the
process. Every method is synchronous and does no I/O, so a call runs to completion
without yielding to the event loop. Records handed out are copies; callers never
get a reference into the store's own maps.

The store never schedules anything: the typing tracker (presence.py) and the chat
service (service.py) own every timer.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from errors import ConflictError, IntegrityError, NotFoundError, ValidationError
from schemas import (
    ChatRoom,
    Message,
    MessageStatus,
    MessageWithSender,
    PublicUser,
    RoomDetail,
    RoomMember,
    RoomSummary,
    TypingStatus,
    User,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _require(fields: dict, *names: str) -> None:
    missing = [n for n in names if not str(fields.get(n) or "").strip()]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


class MemoryStore:
    def __init__(self):
        self.users: Dict[str, User] = {}
        self.rooms: Dict[str, ChatRoom] = {}
        self.messages: Dict[str, Message] = {}
        self.members: Dict[Tuple[str, str], RoomMember] = {}
        self.typing: Dict[Tuple[str, str], TypingStatus] = {}
        self._usernames: Dict[str, str] = {}
        self._lock = threading.Lock()

    # -----------------------------
    # Users
    # -----------------------------

    def create_user(self, fields: dict) -> User:
        """
        Create a user. The username slot is claimed with a single insert-if-absent
        under the store lock, so two concurrent signups can never both win.
        """
        _require(fields, "username", "display_name", "password")
        username = fields["username"].strip()
        display_name = fields["display_name"].strip()
        user = User(
            id=new_id(),
            username=username,
            display_name=display_name,
            password=fields["password"],
            avatar=fields.get("avatar") or display_name[:2].upper(),
            is_online=bool(fields.get("is_online", False)),
            last_seen=utcnow(),
        )
        with self._lock:
            if self._usernames.setdefault(username, user.id) != user.id:
                raise ConflictError("Username already exists")
            self.users[user.id] = user
        logger.info(f"Created user '{username}' ({user.id})")
        return user.model_copy()

    def get_user(self, user_id: str) -> Optional[User]:
        user = self.users.get(user_id)
        return user.model_copy() if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        user_id = self._usernames.get(username)
        return self.get_user(user_id) if user_id else None

    def set_user_online(self, user_id: str, is_online: bool) -> None:
        user = self.users.get(user_id)
        if user is None:
            return
        user.is_online = is_online
        user.last_seen = utcnow()

    def _public(self, user_id: str) -> Optional[PublicUser]:
        user = self.users.get(user_id)
        return user.public() if user else None

    # -----------------------------
    # Rooms & membership
    # -----------------------------

    def create_room(self, fields: dict) -> ChatRoom:
        _require(fields, "name")
        room = ChatRoom(
            id=new_id(),
            name=fields["name"].strip(),
            description=fields.get("description"),
            avatar=fields.get("avatar"),
            type=fields.get("type") or "group",
            created_at=utcnow(),
        )
        self.rooms[room.id] = room
        return room.model_copy()

    def get_room(self, room_id: str) -> Optional[ChatRoom]:
        room = self.rooms.get(room_id)
        return room.model_copy() if room else None

    def add_member(self, user_id: str, room_id: str) -> RoomMember:
        if user_id not in self.users:
            raise NotFoundError("User not found")
        if room_id not in self.rooms:
            raise NotFoundError("Room not found")
        row = RoomMember(id=new_id(), user_id=user_id, room_id=room_id, joined_at=utcnow())
        # Repeat joins keep the first row
        return self.members.setdefault((user_id, room_id), row).model_copy()

    def is_member(self, user_id: str, room_id: str) -> bool:
        return (user_id, room_id) in self.members

    def room_members(self, room_id: str) -> List[PublicUser]:
        members = []
        for (user_id, member_room), _ in self.members.items():
            if member_room != room_id:
                continue
            user = self._public(user_id)
            if user:
                members.append(user)
        return members

    def room_detail(self, room_id: str) -> RoomDetail:
        room = self.rooms.get(room_id)
        if room is None:
            raise NotFoundError("Room not found")
        members = self.room_members(room_id)
        return RoomDetail(
            **room.model_dump(),
            members=members,
            online_count=sum(1 for m in members if m.is_online),
        )

    def rooms_for_user(self, user_id: str) -> List[RoomSummary]:
        summaries = []
        for (member_id, room_id) in self.members:
            if member_id != user_id or room_id not in self.rooms:
                continue
            detail = self.room_detail(room_id)
            summaries.append(RoomSummary(
                **detail.model_dump(),
                last_message=self._last_message(room_id),
                unread_count=0,
            ))
        summaries.sort(
            key=lambda s: s.last_message.timestamp if s.last_message else EPOCH,
            reverse=True,
        )
        return summaries

    # -----------------------------
    # Messages
    # -----------------------------

    def _room_messages(self, room_id: str) -> List[Message]:
        # sorted() is stable, so equal timestamps keep insertion order
        return sorted(
            (m for m in self.messages.values() if m.room_id == room_id),
            key=lambda m: m.timestamp,
        )

    def _with_sender(self, message: Message) -> MessageWithSender:
        sender = self._public(message.sender_id)
        if sender is None:
            logger.error(f"Message {message.id} has unknown sender {message.sender_id}")
            raise IntegrityError("Sender not found")
        return MessageWithSender(**message.model_dump(), sender=sender)

    def _last_message(self, room_id: str) -> Optional[MessageWithSender]:
        latest = None
        for message in self.messages.values():
            if message.room_id == room_id and (latest is None or message.timestamp >= latest.timestamp):
                latest = message
        return self._with_sender(latest) if latest else None

    def messages_for_room(self, room_id: str, limit: int = 50, offset: int = 0) -> List[MessageWithSender]:
        if limit < 0 or offset < 0:
            raise ValidationError("limit and offset must not be negative")
        window = self._room_messages(room_id)[offset:offset + limit]
        return [self._with_sender(m) for m in window]

    def create_message(self, fields: dict) -> MessageWithSender:
        _require(fields, "content", "sender_id", "room_id")
        message = Message(
            id=new_id(),
            content=fields["content"].strip(),
            sender_id=fields["sender_id"],
            room_id=fields["room_id"],
            timestamp=utcnow(),
            status=MessageStatus.SENT,
        )
        enriched = self._with_sender(message)
        self.messages[message.id] = message
        return enriched

    def get_message(self, message_id: str) -> Optional[MessageWithSender]:
        message = self.messages.get(message_id)
        return self._with_sender(message) if message else None

    def update_message_status(self, message_id: str, status: str) -> None:
        try:
            status = MessageStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown message status: {status}")
        message = self.messages.get(message_id)
        if message is not None:
            message.status = status

    # -----------------------------
    # Typing rows
    # -----------------------------

    def upsert_typing(self, user_id: str, room_id: str, is_typing: bool, now: datetime) -> TypingStatus:
        row = TypingStatus(user_id=user_id, room_id=room_id, is_typing=is_typing, last_update=now)
        self.typing[(user_id, room_id)] = row
        return row.model_copy()

    def clear_typing(self, user_id: str, room_id: str) -> None:
        self.typing.pop((user_id, room_id), None)

    def typing_rows(self, room_id: str) -> List[TypingStatus]:
        return [row.model_copy() for row in self.typing.values() if row.room_id == room_id]

    def stats(self) -> dict:
        return {
            "users": len(self.users),
            "rooms": len(self.rooms),
            "members": len(self.members),
            "messages": len(self.messages),
            "typing": len(self.typing),
        }


db = MemoryStore()
