"""System routes: health and recent logs."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from fastapi import APIRouter, Query

from copytrader.engine.worker_pool import JobRunner
from copytrader.services.log_buffer import log_buffer
from copytrader.services.notification_service import NotificationService

router = APIRouter(prefix="/api", tags=["system"])

# Injected at startup
_get_jobs: Callable[[], JobRunner] | None = None
_get_notifier: Callable[[], NotificationService] | None = None


def set_system_dependencies(
    jobs_getter: Callable[[], JobRunner],
    notifier_getter: Callable[[], NotificationService],
) -> None:
    global _get_jobs, _get_notifier
    _get_jobs = jobs_getter
    _get_notifier = notifier_getter


@router.get("/health")
async def get_health() -> dict[str, Any]:
    if _get_jobs is None or _get_notifier is None:
        return {"status": "starting"}
    return {
        "status": "ok",
        "background_jobs": _get_jobs().pending,
        "websocket_clients": _get_notifier().client_count,
    }


@router.get("/logs")
async def get_logs(
    source: str | None = Query(None),
    level: str | None = Query(None),
    since_seq: int = Query(0, ge=0),
    limit: int = Query(200, ge=1, le=2000),
) -> dict[str, Any]:
    """Recent log entries from the in-memory buffer."""
    entries = log_buffer.get_entries(
        source=source, level=level, since_seq=since_seq, limit=limit
    )
    return {"entries": entries, "latest_seq": log_buffer.latest_seq}
