"""WebSocket endpoint for per-user realtime events."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from copytrader.services.notification_service import NotificationService

router = APIRouter()
logger = logging.getLogger(__name__)

# Injected at startup
_get_notifier: Callable[[], NotificationService] | None = None


def set_ws_dependencies(notifier_getter: Callable[[], NotificationService]) -> None:
    global _get_notifier
    _get_notifier = notifier_getter


@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket, user_id: str = ""):
    """Push trade, replication and settlement events to one user."""
    if _get_notifier is None:
        await ws.close(code=1011, reason="Server not initialized")
        return
    if not user_id:
        await ws.close(code=1008, reason="user_id is required")
        return

    notifier = _get_notifier()
    await notifier.connect(user_id, ws)
    try:
        while True:
            data = await ws.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                logger.warning("Invalid JSON from WebSocket client: %s", data[:100])
                continue
            if isinstance(message, dict) and message.get("action") == "ping":
                await ws.send_text(json.dumps({"type": "pong", "data": {}}))
    except WebSocketDisconnect:
        pass
    finally:
        await notifier.disconnect(user_id, ws)
