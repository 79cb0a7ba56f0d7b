"""WebSocket notification service.

Keeps each user's open WebSocket connections and pushes events to them.
Delivery is fire-and-forget: a failed send drops that socket and never
raises into the caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class NotificationService:
    """Manage per-user WebSocket connections and push events."""

    def __init__(self) -> None:
        self._connections: dict[str, list[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, user_id: str, ws: WebSocket) -> None:
        """Accept and register a WebSocket for *user_id*."""
        await ws.accept()
        async with self._lock:
            self._connections.setdefault(user_id, []).append(ws)
        logger.info("WebSocket client connected for %s (%d total)", user_id, self.client_count)

    async def disconnect(self, user_id: str, ws: WebSocket) -> None:
        async with self._lock:
            sockets = self._connections.get(user_id, [])
            if ws in sockets:
                sockets.remove(ws)
            if not sockets:
                self._connections.pop(user_id, None)
        logger.info("WebSocket client disconnected (%d remaining)", self.client_count)

    async def notify(
        self, user_id: str, event: str, data: dict[str, Any] | None = None
    ) -> None:
        """Push *event* to every socket of *user_id*."""
        message = json.dumps({"type": event, "data": data or {}}, default=str)
        async with self._lock:
            sockets = list(self._connections.get(user_id, []))
        dead: list[WebSocket] = []
        for ws in sockets:
            try:
                await ws.send_text(message)
            except Exception as exc:
                logger.debug("Dropping socket for %s: %s", user_id, exc)
                dead.append(ws)
        for ws in dead:
            await self.disconnect(user_id, ws)

    async def notify_many(
        self, user_ids: Iterable[str], event: str, data: dict[str, Any] | None = None
    ) -> None:
        for user_id in set(user_ids):
            await self.notify(user_id, event, data)

    def connected_users(self) -> list[str]:
        return list(self._connections)

    @property
    def client_count(self) -> int:
        """Return the number of connected WebSocket clients."""
        return sum(len(s) for s in self._connections.values())
