"""WebSocket connection manager for real-time events."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Any, Iterable

from fastapi import WebSocket

logger = logging.getLogger(__name__)

TOPIC_PREFIX = "topic:"


class ConnectionManager:
    """Tracks active WebSocket connections keyed by principal id, plus topic membership."""

    def __init__(self) -> None:
        # principal_id -> set of active websocket connections
        self._connections: dict[str, set[WebSocket]] = {}
        # principal_id -> topics the principal listens on
        self._topics: dict[str, set[str]] = {}
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None

    async def connect(self, websocket: WebSocket, principal_id: str, topics: Iterable[str] = ()) -> None:
        await websocket.accept()
        self._loop = asyncio.get_running_loop()
        with self._lock:
            self._connections.setdefault(principal_id, set()).add(websocket)
            self._topics.setdefault(principal_id, set()).update(topics)
        logger.info("WS connected: principal=%s (total=%s)", principal_id, self.total_connections)

    def disconnect(self, websocket: WebSocket, principal_id: str) -> None:
        with self._lock:
            conns = self._connections.get(principal_id)
            if conns:
                conns.discard(websocket)
                if not conns:
                    del self._connections[principal_id]
                    self._topics.pop(principal_id, None)
        logger.info("WS disconnected: principal=%s (total=%s)", principal_id, self.total_connections)

    def set_topics(self, principal_id: str, topics: Iterable[str]) -> None:
        """Replace a connected principal's topics (e.g. after moving region)."""
        with self._lock:
            if principal_id in self._connections:
                self._topics[principal_id] = set(topics)

    def recipients(self, target_id: str) -> list[str]:
        """Principal ids a target resolves to: the principal itself, or a topic's members."""
        with self._lock:
            if target_id.startswith(TOPIC_PREFIX):
                return [pid for pid, topics in self._topics.items() if target_id in topics]
            return [target_id] if target_id in self._connections else []

    async def send_to_user(self, principal_id: str, message: dict[str, Any]) -> None:
        """Send a message to all connections for a principal."""
        with self._lock:
            conns = list(self._connections.get(principal_id, ()))
        payload = json.dumps(message, default=str)
        dead: list[WebSocket] = []
        for ws in conns:
            try:
                await ws.send_text(payload)
            except Exception:
                dead.append(ws)
        for ws in dead:
            self.disconnect(ws, principal_id)

    async def send_to_target(self, target_id: str, message: dict[str, Any]) -> int:
        """Send to a principal or every member of a topic. Returns how many principals were reached."""
        principal_ids = self.recipients(target_id)
        for pid in principal_ids:
            await self.send_to_user(pid, message)
        return len(principal_ids)

    def send_threadsafe(self, target_id: str, message: dict[str, Any], timeout: float = 5.0) -> int:
        """Blocking send from a worker thread onto the server's event loop."""
        loop = self._loop
        if loop is None or loop.is_closed() or not self.recipients(target_id):
            return 0
        future = asyncio.run_coroutine_threadsafe(self.send_to_target(target_id, message), loop)
        return future.result(timeout)

    @property
    def total_connections(self) -> int:
        with self._lock:
            return sum(len(c) for c in self._connections.values())


# Singleton instance used across the app
ws_manager = ConnectionManager()
