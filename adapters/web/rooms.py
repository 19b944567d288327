"""WebSocket connection tracking and room broadcasting."""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import structlog
from fastapi import WebSocket

logger = structlog.get_logger(__name__)

GLOBAL_ROOM = "global"


def user_room(user_id: str) -> str:
    return f"user-{user_id}"


@dataclass(eq=False)
class SocketConnection:
    """One accepted socket plus the rooms and subscriptions it owns."""

    websocket: WebSocket
    id: str = field(default_factory=lambda: f"client_{uuid4().hex[:12]}")
    rooms: set[str] = field(default_factory=set)
    subscription_ids: set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    closed: bool = False
    _send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def send_text(self, message: str) -> bool:
        """Single writer per socket; ticks and control replies never interleave."""
        if self.closed:
            return False
        async with self._send_lock:
            try:
                await self.websocket.send_text(message)
            except Exception as e:
                self.closed = True
                logger.warning("socket_send_failed", client_id=self.id, error=str(e))
                return False
        return True

    async def send_json(self, message: dict[str, Any]) -> bool:
        message.setdefault("timestamp", datetime.now(UTC).isoformat())
        if self.closed:
            return False
        async with self._send_lock:
            try:
                await self.websocket.send_json(message)
            except Exception as e:
                self.closed = True
                logger.warning("socket_send_failed", client_id=self.id, error=str(e))
                return False
        return True


class RoomHub:
    """
    Tracks connected sockets and the rooms they joined.

    Supports:
    - Broadcast to one room or to every socket
    - Dropping sockets whose send fails during a broadcast
    """

    def __init__(self) -> None:
        self.connections: dict[str, SocketConnection] = {}
        self._lock = asyncio.Lock()
        self.logger = logger.bind(component="room_hub")

    async def connect(self, websocket: WebSocket) -> SocketConnection:
        await websocket.accept()
        connection = SocketConnection(websocket=websocket)
        async with self._lock:
            self.connections[connection.id] = connection
        self.logger.info("socket_connected", client_id=connection.id)
        return connection

    async def disconnect(self, connection: SocketConnection) -> None:
        connection.closed = True
        async with self._lock:
            self.connections.pop(connection.id, None)
        self.logger.info("socket_disconnected", client_id=connection.id, rooms=sorted(connection.rooms))

    async def join(self, connection: SocketConnection, room: str) -> None:
        async with self._lock:
            connection.rooms.add(room)
        self.logger.debug("room_joined", client_id=connection.id, room=room)

    def members(self, room: str) -> list[SocketConnection]:
        return [c for c in self.connections.values() if room in c.rooms]

    async def broadcast(self, message: dict[str, Any], room: str | None = None) -> int:
        """Send to every member of `room`, or to every socket when room is None."""
        async with self._lock:
            targets = [
                c for c in self.connections.values() if room is None or room in c.rooms
            ]

        sent_count = 0
        failed = []
        for connection in targets:
            if await connection.send_json(dict(message)):
                sent_count += 1
            else:
                failed.append(connection)

        for connection in failed:
            await self.disconnect(connection)

        if sent_count:
            self.logger.debug(
                "broadcast_sent", room=room or "*", type=message.get("type"), recipients=sent_count
            )
        return sent_count

    def connection_count(self) -> int:
        return len(self.connections)
