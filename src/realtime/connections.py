"""WebSocket connection and room bookkeeping for the realtime gateway."""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from starlette.websockets import WebSocket, WebSocketDisconnect

from src.schemas.auth import UserContext

logger = logging.getLogger(__name__)


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def conversation_room(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


@dataclass(eq=False)
class ClientConnection:
    """A live WebSocket client.

    ``user`` is set when the client presented a valid token; its identity
    is then authoritative. ``user_id`` is the identity announced or bound
    for presence and personal notifications.
    """

    websocket: WebSocket
    user: UserContext | None = None
    handle: str = field(default_factory=lambda: uuid4().hex)
    user_id: str | None = None
    closed: bool = False
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def authenticated(self) -> bool:
        return self.user is not None


class ConnectionManager:
    """Tracks connections and their room memberships.

    Room state is only mutated synchronously from the event loop, so no
    lock is needed.
    """

    def __init__(self) -> None:
        self._connections: dict[str, ClientConnection] = {}
        self._rooms: dict[str, set[str]] = defaultdict(set)
        self._memberships: dict[str, set[str]] = defaultdict(set)

    def register(self, connection: ClientConnection) -> None:
        self._connections[connection.handle] = connection

    def unregister(self, connection: ClientConnection) -> None:
        """Forget a connection and remove it from every room."""
        connection.closed = True
        self._connections.pop(connection.handle, None)
        for room in self._memberships.pop(connection.handle, set()):
            members = self._rooms.get(room)
            if members is not None:
                members.discard(connection.handle)
                if not members:
                    del self._rooms[room]

    def join(self, connection: ClientConnection, room: str) -> None:
        if connection.closed:
            return
        self._rooms[room].add(connection.handle)
        self._memberships[connection.handle].add(room)

    def leave(self, connection: ClientConnection, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection.handle)
            if not members:
                del self._rooms[room]
        self._memberships.get(connection.handle, set()).discard(room)

    def rooms_of(self, connection: ClientConnection) -> set[str]:
        return set(self._memberships.get(connection.handle, set()))

    def members(self, room: str) -> list[ClientConnection]:
        return [
            self._connections[handle]
            for handle in list(self._rooms.get(room, ()))
            if handle in self._connections
        ]

    def get(self, handle: str) -> ClientConnection | None:
        return self._connections.get(handle)

    @property
    def active_count(self) -> int:
        return len(self._connections)

    async def send(self, connection: ClientConnection, event: str, data: Any) -> bool:
        """Send one frame to a connection.

        A failed send marks the connection closed and drops it from its rooms.

        Returns:
            bool: True if the frame was handed to the socket.
        """
        if connection.closed:
            return False

        try:
            async with connection.send_lock:
                await connection.websocket.send_json({"event": event, "data": data})
            return True
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.warning("Dropping connection %s after failed send of %s: %s", connection.handle, event, e)
            self.unregister(connection)
            return False

    async def emit_to_room(
        self,
        room: str,
        event: str,
        data: Any,
        exclude: ClientConnection | None = None,
    ) -> int:
        """Send a frame to every member of ``room`` except ``exclude``.

        Returns:
            int: Number of connections the frame was delivered to.
        """
        targets = [member for member in self.members(room) if member is not exclude]
        results = await asyncio.gather(*(self.send(member, event, data) for member in targets))
        return sum(results)

    async def broadcast(self, event: str, data: Any, exclude: ClientConnection | None = None) -> int:
        """Send a frame to every connection except ``exclude``."""
        targets = [connection for connection in list(self._connections.values()) if connection is not exclude]
        results = await asyncio.gather(*(self.send(target, event, data) for target in targets))
        return sum(results)
