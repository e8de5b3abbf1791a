"""
Push-channel frames.

One model per event kind, told apart by the ``type`` tag. Outbound events are what
the server writes to room members; inbound frames are what a client may send on
its own socket.
"""
from typing import Annotated, Literal, Optional, Union

from pydantic import Field, TypeAdapter

from schemas import CamelModel, MessageStatus, MessageWithSender


# -----------------------------
# Server -> client
# -----------------------------

class NewMessageEvent(CamelModel):
    type: Literal["new_message"] = "new_message"
    message: MessageWithSender


class TypingStatusEvent(CamelModel):
    type: Literal["typing_status"] = "typing_status"
    user_id: str
    room_id: str
    is_typing: bool


class UserJoinedEvent(CamelModel):
    type: Literal["user_joined"] = "user_joined"
    user_id: str
    room_id: str


class UserLeftEvent(CamelModel):
    type: Literal["user_left"] = "user_left"
    user_id: str
    room_id: str


class MessageStatusEvent(CamelModel):
    type: Literal["message_status"] = "message_status"
    message_id: str
    room_id: str
    status: MessageStatus


class ErrorEvent(CamelModel):
    type: Literal["error"] = "error"
    message: str


ServerEvent = Annotated[
    Union[NewMessageEvent, TypingStatusEvent, UserJoinedEvent, UserLeftEvent, MessageStatusEvent, ErrorEvent],
    Field(discriminator="type"),
]
server_events = TypeAdapter(ServerEvent)


# -----------------------------
# Client -> server
# -----------------------------

class JoinRoomFrame(CamelModel):
    type: Literal["join_room"] = "join_room"
    room_id: str
    user_id: str


class RelayedMessage(CamelModel):
    id: Optional[str] = None
    content: Optional[str] = None


class NewMessageFrame(CamelModel):
    """Either fresh content, or a message already created through the API"""
    type: Literal["new_message"] = "new_message"
    content: Optional[str] = None
    message: Optional[RelayedMessage] = None


class TypingStatusFrame(CamelModel):
    type: Literal["typing_status"] = "typing_status"
    is_typing: bool = True


ClientFrame = Annotated[
    Union[JoinRoomFrame, NewMessageFrame, TypingStatusFrame],
    Field(discriminator="type"),
]
client_frames = TypeAdapter(ClientFrame)


def encode(event: CamelModel) -> str:
    return event.model_dump_json(by_alias=True)
