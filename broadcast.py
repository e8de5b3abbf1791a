"""
Room broadcast registry.

Maps room ids to the live connections currently watching them. A connection
watches at most one room at a time; joining another room leaves the old one.
"""
import logging
from typing import Dict, List, Optional, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from events import UserJoinedEvent, UserLeftEvent, encode
from schemas import CamelModel

logger = logging.getLogger(__name__)


class Connection:
    """One accepted WebSocket plus what it joined as"""

    def __init__(self, websocket: WebSocket, user_id: Optional[str] = None):
        self.websocket = websocket
        self.user_id = user_id
        self.room_id: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, data: str) -> None:
        await self.websocket.send_text(data)

    async def send(self, event: CamelModel) -> None:
        await self.send_text(encode(event))

    def __repr__(self):
        return f"<Connection user={self.user_id} room={self.room_id}>"


class RoomRegistry:
    def __init__(self):
        self._rooms: Dict[str, Set[Connection]] = {}

    async def join(self, connection: Connection, room_id: str, user_id: str) -> None:
        if connection.room_id is not None:
            await self.leave(connection)

        connection.room_id = room_id
        connection.user_id = user_id
        self._rooms.setdefault(room_id, set()).add(connection)
        logger.info(f"User {user_id} joined room {room_id}")

        await self.publish(room_id, UserJoinedEvent(user_id=user_id, room_id=room_id), exclude=connection)

    async def leave(self, connection: Connection) -> None:
        room_id = connection.room_id
        if room_id is None:
            return
        connection.room_id = None
        self._discard(room_id, connection)
        logger.info(f"User {connection.user_id} left room {room_id}")

        if connection.user_id:
            await self.publish(room_id, UserLeftEvent(user_id=connection.user_id, room_id=room_id))

    async def publish(self, room_id: str, event: CamelModel, exclude: Optional[Connection] = None) -> int:
        """
        Write an event to every open connection in the room except ``exclude``.

        The event is serialized once. Closed sockets are skipped and left for their
        own disconnect to remove; a socket whose write fails is pruned here.
        Returns the number of connections written to.
        """
        data = encode(event)
        sent = 0
        failed = []
        for connection in list(self._rooms.get(room_id, ())):
            if connection is exclude or not connection.is_open:
                continue
            try:
                await connection.send_text(data)
                sent += 1
            except Exception as e:
                logger.warning(f"Dropping {connection!r} after failed send: {e}")
                failed.append(connection)

        # room_id stays set so the socket's own disconnect still announces user_left
        for connection in failed:
            self._discard(room_id, connection)
        return sent

    def connections(self, room_id: str) -> List[Connection]:
        return list(self._rooms.get(room_id, ()))

    def rooms(self) -> Dict[str, int]:
        return {room_id: len(conns) for room_id, conns in self._rooms.items()}

    def _discard(self, room_id: str, connection: Connection) -> None:
        conns = self._rooms.get(room_id)
        if conns is None:
            return
        conns.discard(connection)
        if not conns:
            del self._rooms[room_id]
