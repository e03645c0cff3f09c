"""
notifier.py
===========
Real-time push of notification messages to connected clients.

Pushing is best-effort: a send that fails is logged and the dead socket
dropped, never raised to the caller. The durable copy of every notification
is the Notification row written in the same transaction as the state change.
"""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, Set

from fastapi import WebSocket

from clock import utc_now

logger = logging.getLogger(__name__)


def restaurant_group(restaurant_id: int) -> str:
    return f"Restaurant_{restaurant_id}"


class NotificationSink(ABC):

    @abstractmethod
    async def push_to_user(self, user_id: int, message: str) -> None:
        ...

    @abstractmethod
    async def push_to_group(self, group: str, message: str) -> None:
        ...


class ConnectionManager(NotificationSink):
    """WebSocket connections indexed by user id and by group name."""

    def __init__(self):
        self.user_connections: Dict[int, Set[WebSocket]] = defaultdict(set)
        self.group_connections: Dict[str, Set[WebSocket]] = defaultdict(set)

    async def connect(self, websocket: WebSocket, user_id: int) -> None:
        await websocket.accept()
        self.user_connections[user_id].add(websocket)

    def join_group(self, websocket: WebSocket, group: str) -> None:
        self.group_connections[group].add(websocket)

    def disconnect(self, websocket: WebSocket, user_id: int) -> None:
        self.user_connections[user_id].discard(websocket)
        if not self.user_connections[user_id]:
            del self.user_connections[user_id]
        for group in list(self.group_connections):
            self.group_connections[group].discard(websocket)
            if not self.group_connections[group]:
                del self.group_connections[group]

    async def _send_all(self, connections: Set[WebSocket], message: str) -> None:
        payload = {
            "event": "ReceiveNotification",
            "message": message,
            "timestamp": utc_now().isoformat(),
        }
        dead_connections = set()
        for connection in list(connections):
            try:
                await connection.send_json(payload)
            except Exception as e:
                logger.error(f"Failed to push notification: {e}")
                dead_connections.add(connection)

        for conn in dead_connections:
            connections.discard(conn)

    async def push_to_user(self, user_id: int, message: str) -> None:
        connections = self.user_connections.get(user_id)
        if connections:
            await self._send_all(connections, message)
            if not connections and self.user_connections.get(user_id) is connections:
                del self.user_connections[user_id]

    async def push_to_group(self, group: str, message: str) -> None:
        connections = self.group_connections.get(group)
        if connections:
            await self._send_all(connections, message)
            if not connections and self.group_connections.get(group) is connections:
                del self.group_connections[group]


manager = ConnectionManager()
