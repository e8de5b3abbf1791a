"""
Client side of the chat service.

A RoomSession keeps a local copy of one room's messages in step with the server.
Two paths feed it: the request API (page fetches and the replies to our own
sends) and the push channel. The same message can arrive on both, so the log
merges strictly by message id and never by content or timestamp.

The push channel reconnects with exponential backoff (1s, 2s, 4s, 8s, 16s). After
the last attempt it parks in the ``failed`` state until ``reconnect()`` is called.
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from urllib.parse import urlencode

import httpx
import websockets
from pydantic import ValidationError as PydanticValidationError

import config
from errors import error_for_status
from events import (
    ErrorEvent,
    MessageStatusEvent,
    NewMessageEvent,
    TypingStatusEvent,
    UserJoinedEvent,
    UserLeftEvent,
    server_events,
)
from schemas import MessageStatus, MessageWithSender, PublicUser, RoomDetail, RoomSummary

logger = logging.getLogger(__name__)

DISCONNECTED = "disconnected"
CONNECTING = "connecting"
CONNECTED = "connected"
FAILED = "failed"


def backoff_delay(attempt: int, base: float = config.RECONNECT_BASE_DELAY) -> float:
    return base * (2 ** attempt)


class MessageLog:
    """Messages of one room as this client knows them, keyed by id"""

    def __init__(self):
        self._by_id: Dict[str, MessageWithSender] = {}

    def merge(self, message: MessageWithSender) -> bool:
        """Add a message unless its id is already known. Returns True if added."""
        if message.id in self._by_id:
            return False
        self._by_id[message.id] = message
        return True

    def merge_page(self, messages: List[MessageWithSender]) -> int:
        """
        Fold a fetched page in. Unknown ids are added; known ones take the fetched
        status, which may be newer than what the push channel told us.
        """
        added = 0
        for message in messages:
            known = self._by_id.get(message.id)
            if known is None:
                self._by_id[message.id] = message
                added += 1
            else:
                known.status = message.status
        return added

    def apply_status(self, message_id: str, status: MessageStatus) -> bool:
        message = self._by_id.get(message_id)
        if message is None:
            return False
        message.status = status
        return True

    def get(self, message_id: str) -> Optional[MessageWithSender]:
        return self._by_id.get(message_id)

    @property
    def messages(self) -> List[MessageWithSender]:
        # stable: same-timestamp messages keep arrival order
        return sorted(self._by_id.values(), key=lambda m: m.timestamp)

    def __len__(self):
        return len(self._by_id)

    def __contains__(self, message_id):
        return message_id in self._by_id


class ChatApi:
    """Thin async wrapper around the request API"""

    def __init__(self, base_url: str = "", token: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.token = token
        self._client = client or httpx.AsyncClient(base_url=base_url)

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        headers = kwargs.pop("headers", {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        response = await self._client.request(method, path, headers=headers, **kwargs)
        if response.is_error:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            if not isinstance(detail, str):
                detail = json.dumps(detail)
            raise error_for_status(response.status_code, detail)
        return response.json()

    async def signup(self, username: str, display_name: str, password: str) -> PublicUser:
        data = await self._request("POST", "/api/auth/signup", json={
            "username": username,
            "displayName": display_name,
            "password": password,
            "confirmPassword": password,
        })
        self.token = data["sessionId"]
        return PublicUser.model_validate(data)

    async def login(self, username: str, password: str) -> PublicUser:
        data = await self._request("POST", "/api/auth/login", json={"username": username, "password": password})
        self.token = data["sessionId"]
        return PublicUser.model_validate(data)

    async def logout(self) -> None:
        await self._request("POST", "/api/auth/logout")
        self.token = None

    async def me(self) -> PublicUser:
        return PublicUser.model_validate(await self._request("GET", "/api/auth/me"))

    async def list_rooms(self) -> List[RoomSummary]:
        return [RoomSummary.model_validate(r) for r in await self._request("GET", "/api/rooms")]

    async def room_detail(self, room_id: str) -> RoomDetail:
        return RoomDetail.model_validate(await self._request("GET", f"/api/rooms/{room_id}"))

    async def add_member(self, room_id: str, username: str) -> RoomDetail:
        data = await self._request("POST", f"/api/rooms/{room_id}/members", json={"username": username})
        return RoomDetail.model_validate(data)

    async def list_messages(self, room_id: str, limit: int = config.DEFAULT_PAGE_SIZE, offset: int = 0) -> List[MessageWithSender]:
        data = await self._request(
            "GET", f"/api/rooms/{room_id}/messages", params={"limit": limit, "offset": offset}
        )
        return [MessageWithSender.model_validate(m) for m in data]

    async def send_message(self, room_id: str, content: str) -> MessageWithSender:
        data = await self._request("POST", f"/api/rooms/{room_id}/messages", json={"content": content})
        return MessageWithSender.model_validate(data)

    async def set_typing(self, room_id: str, is_typing: bool) -> None:
        await self._request("POST", f"/api/rooms/{room_id}/typing", json={"isTyping": is_typing})

    async def list_typing(self, room_id: str) -> List[PublicUser]:
        return [PublicUser.model_validate(u) for u in await self._request("GET", f"/api/rooms/{room_id}/typing")]


class PushChannel:
    """
    One WebSocket to the server's /ws endpoint, joined to a single room.

    Every decoded event is handed to ``on_event``. ``connect`` and ``sleep`` are
    swappable so the reconnect policy can be driven without a network.
    """

    def __init__(
        self,
        url: str,
        token: str,
        room_id: str,
        user_id: str,
        on_event: Callable[[Any], Awaitable[None]],
        connect: Callable = websockets.connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        base_delay: float = config.RECONNECT_BASE_DELAY,
        max_attempts: int = config.RECONNECT_MAX_ATTEMPTS,
    ):
        self.uri = f"{url}?{urlencode({'token': token})}"
        self.room_id = room_id
        self.user_id = user_id
        self.on_event = on_event
        self.base_delay = base_delay
        self.max_attempts = max_attempts
        self.state = DISCONNECTED
        self.attempts = 0
        self._connect = connect
        self._sleep = sleep
        self._ws = None
        self._closed = False
        self._task: Optional[asyncio.Task] = None

    def start(self) -> asyncio.Task:
        self._closed = False
        self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    def reconnect(self) -> asyncio.Task:
        """Start over after giving up, with a fresh attempt budget."""
        self.attempts = 0
        return self.start()

    async def close(self) -> None:
        self._closed = True
        if self._ws is not None:
            await self._ws.close()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self.state = DISCONNECTED

    async def run(self) -> None:
        try:
            await self._run()
        finally:
            if self.state != FAILED:
                self.state = DISCONNECTED

    async def _run(self) -> None:
        while not self._closed:
            self.state = CONNECTING
            try:
                async with self._connect(self.uri) as ws:
                    self._ws = ws
                    self.state = CONNECTED
                    self.attempts = 0
                    await self._send({"type": "join_room", "roomId": self.room_id, "userId": self.user_id})
                    async for raw in ws:
                        await self._dispatch(raw)
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.warning(f"Push channel error: {e}")
            finally:
                self._ws = None

            if self._closed:
                break
            self.state = DISCONNECTED
            if self.attempts >= self.max_attempts:
                self.state = FAILED
                logger.error(f"Push channel gave up after {self.attempts} reconnect attempts")
                return
            delay = backoff_delay(self.attempts, self.base_delay)
            self.attempts += 1
            logger.info(f"Reconnecting in {delay:g}s (attempt {self.attempts}/{self.max_attempts})")
            await self._sleep(delay)

    async def _dispatch(self, raw) -> None:
        try:
            event = server_events.validate_json(raw)
        except PydanticValidationError as e:
            logger.error(f"Unreadable push frame: {e}")
            return
        try:
            await self.on_event(event)
        except Exception:
            logger.exception(f"Push handler failed on {event.type} event")

    async def _send(self, frame: dict) -> bool:
        if self._ws is None or self.state != CONNECTED:
            return False
        await self._ws.send(json.dumps(frame))
        return True

    async def send_typing(self, is_typing: bool) -> bool:
        return await self._send({"type": "typing_status", "isTyping": is_typing})

    async def relay_message(self, message: MessageWithSender) -> bool:
        return await self._send({"type": "new_message", "message": {"id": message.id}})


class RoomSession:
    """Local state of one room, fed by both the request API and the push channel"""

    def __init__(
        self,
        api: ChatApi,
        room_id: str,
        user: PublicUser,
        on_activity: Optional[Callable[[str, str], None]] = None,
    ):
        self.api = api
        self.room_id = room_id
        self.user = user
        self.log = MessageLog()
        self.typing: Set[str] = set()
        self.on_activity = on_activity
        self.push: Optional[PushChannel] = None

    def open_push(self, url: str, **kwargs) -> PushChannel:
        self.push = PushChannel(url, self.api.token, self.room_id, self.user.id, self.handle_event, **kwargs)
        self.push.start()
        return self.push

    async def refresh(self) -> None:
        self.log.merge_page(await self.api.list_messages(self.room_id))

    async def send(self, content: str) -> MessageWithSender:
        """
        Send through the request API. The reply only triggers a refresh; the push
        channel is what normally lands the message, and either way it shows once.
        """
        message = await self.api.send_message(self.room_id, content)
        if self.push is not None:
            await self.push.relay_message(message)
        await self.set_typing(False)
        await self.refresh()
        return message

    async def set_typing(self, is_typing: bool) -> None:
        if self.push is None or not await self.push.send_typing(is_typing):
            await self.api.set_typing(self.room_id, is_typing)

    async def handle_event(self, event) -> None:
        if isinstance(event, NewMessageEvent):
            if event.message.room_id == self.room_id:
                self.log.merge(event.message)
        elif isinstance(event, MessageStatusEvent):
            self.log.apply_status(event.message_id, event.status)
        elif isinstance(event, TypingStatusEvent):
            if event.user_id == self.user.id:
                return
            if event.is_typing:
                self.typing.add(event.user_id)
            else:
                self.typing.discard(event.user_id)
        elif isinstance(event, UserJoinedEvent):
            if self.on_activity:
                self.on_activity(event.user_id, "joined")
        elif isinstance(event, UserLeftEvent):
            self.typing.discard(event.user_id)
            if self.on_activity:
                self.on_activity(event.user_id, "left")
        elif isinstance(event, ErrorEvent):
            logger.warning(f"Server rejected a frame: {event.message}")
        else:
            raise TypeError(f"Unhandled push event: {event!r}")
