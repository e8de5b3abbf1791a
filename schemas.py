"""
Data model for the chat service

Each Pydantic model is one record kind held by the in-memory store
(see database.py) or a view derived from those records.
On the wire every model is camelCase (displayName, roomId, isTyping, ...).
"""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(ObjectId())


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RoomType(str, Enum):
    GROUP = "group"
    DIRECT = "direct"


class MessageStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    # Valid but nothing moves a message here yet (no read tracking)
    READ = "read"


class PublicUser(CamelModel):
    """What other clients get to see of a user"""
    id: str
    username: str = Field(..., description="Unique login name")
    display_name: str = Field(..., description="Public display name")
    avatar: Optional[str] = Field(None, description="Avatar tag, two letters by default")
    is_online: bool = Field(False)
    last_seen: datetime = Field(default_factory=utcnow)


class User(PublicUser):
    """Users collection schema; password is stored as given and never serialized"""
    password: str = Field(..., exclude=True)

    def public(self) -> PublicUser:
        return PublicUser.model_validate(self.model_dump())


class ChatRoom(CamelModel):
    """Rooms collection schema"""
    id: str
    name: str = Field(..., description="Room name")
    description: Optional[str] = Field(None)
    avatar: Optional[str] = Field(None, description="Avatar tag")
    type: RoomType = Field(RoomType.GROUP, description="group or direct")
    created_at: datetime = Field(default_factory=utcnow)


class RoomMember(CamelModel):
    """Membership row; (user_id, room_id) is unique"""
    id: str
    user_id: str
    room_id: str
    joined_at: datetime = Field(default_factory=utcnow)


class Message(CamelModel):
    """Messages collection schema"""
    id: str
    content: str = Field(..., description="Message text content")
    sender_id: str
    room_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    status: MessageStatus = Field(MessageStatus.SENT)


class MessageWithSender(Message):
    sender: PublicUser


class TypingStatus(CamelModel):
    user_id: str
    room_id: str
    is_typing: bool = False
    last_update: datetime = Field(default_factory=utcnow)


class RoomDetail(ChatRoom):
    members: List[PublicUser] = Field(default_factory=list)
    online_count: int = 0


class RoomSummary(RoomDetail):
    """A room as listed in a user's sidebar"""
    last_message: Optional[MessageWithSender] = None
    # Kept for clients; there is no read tracking so it is always zero
    unread_count: int = 0
