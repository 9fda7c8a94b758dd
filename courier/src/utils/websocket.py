"""
WebSocket Connection Manager for real-time notification delivery.

Clients join rooms (``user:<id>``) and receive every event published to
them. The manager doubles as the in-app channel's real-time transport:
``publish()`` may be called from any thread (queue workers run in a thread
pool) and hands the broadcast over to the event loop the manager is bound to.

Usage:
    from courier.src.utils.websocket import get_connection_manager

    manager = get_connection_manager()
    manager.bind_loop(asyncio.get_running_loop())

    # In WebSocket endpoint
    await manager.connect("user:42", websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect("user:42", websocket)

    # From a worker thread
    manager.publish("user:42", "notification", {"id": 1, "title": "..."})
"""

import asyncio
from concurrent.futures import Future
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

from courier.src.utils.logging_config import get_logger

logger = get_logger("websocket")


class ConnectionManager:
    """
    Manages WebSocket connections grouped by room.

    Maintains a mapping of room names to sets of connected WebSocket clients,
    so a user with several tabs or devices receives every event once per
    connection.
    """

    def __init__(self):
        """Initialize the connection manager with empty connection registry."""
        self._connections: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Bind the event loop that owns the connections (called on startup)."""
        self._loop = loop

    async def connect(self, room: str, websocket: WebSocket) -> None:
        """
        Accept and register a WebSocket connection for a room.

        Args:
            room: Room to join (e.g. ``user:42``)
            websocket: WebSocket connection to register
        """
        await websocket.accept()
        await self.register_accepted(room, websocket)

    async def register_accepted(self, room: str, websocket: WebSocket) -> None:
        """
        Register an already-accepted WebSocket connection to a room.

        Args:
            room: Room identifier
            websocket: Already-accepted WebSocket connection to register
        """
        async with self._lock:
            if room not in self._connections:
                self._connections[room] = set()
            self._connections[room].add(websocket)
            logger.debug(
                f"WebSocket registered for room {room}. "
                f"Total connections: {len(self._connections[room])}"
            )

    def disconnect(self, room: str, websocket: WebSocket) -> None:
        """
        Unregister a WebSocket connection.

        Note:
            This method is synchronous for use in exception handlers.
        """
        if room in self._connections:
            self._connections[room].discard(websocket)
            logger.debug(
                f"WebSocket disconnected from room {room}. "
                f"Remaining connections: {len(self._connections[room])}"
            )
            # Clean up empty connection sets
            if not self._connections[room]:
                del self._connections[room]

    async def broadcast(self, room: str, data: Dict[str, Any]) -> int:
        """
        Broadcast a message to all clients in a room.

        Failed connections are removed; the broadcast continues to the others.

        Returns:
            Number of connections the message was sent to
        """
        if room not in self._connections:
            return 0

        # Copy set to avoid modification during iteration
        connections = self._connections[room].copy()
        disconnected: Set[WebSocket] = set()
        sent = 0

        for connection in connections:
            try:
                await connection.send_json(data)
                sent += 1
            except Exception as e:
                logger.debug(f"Failed to send to WebSocket: {e}")
                disconnected.add(connection)

        for conn in disconnected:
            self.disconnect(room, conn)

        return sent

    def publish(self, room: str, event: str, payload: Dict[str, Any]) -> Optional[Future]:
        """
        Thread-safe fire-and-forget publish of an event to a room.

        Returns:
            The concurrent Future of the scheduled broadcast, or None when no
            event loop is bound (the message is dropped)
        """
        if self._loop is None or self._loop.is_closed():
            logger.warning(
                "No event loop bound, dropping real-time message",
                extra={"room": room, "event": event},
            )
            return None

        message = {"event": event, "data": payload}
        return asyncio.run_coroutine_threadsafe(self.broadcast(room, message), self._loop)

    def get_connection_count(self, room: Optional[str] = None) -> int:
        """
        Get the number of active connections.

        Args:
            room: Optional room; if None, returns total connections across all rooms
        """
        if room:
            return len(self._connections.get(room, set()))
        return sum(len(conns) for conns in self._connections.values())

    def get_active_rooms(self) -> Set[str]:
        return set(self._connections.keys())


# Singleton instance
_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    """
    Get the singleton ConnectionManager instance.

    Note:
        Creates the instance on first call.
    """
    global _connection_manager
    if _connection_manager is None:
        _connection_manager = ConnectionManager()
    return _connection_manager
