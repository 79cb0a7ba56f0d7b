"""Structured audit logging service.

Writes audit entries to the database for review and debugging.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from copytrader.database import get_session_factory
from copytrader.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


class AuditService:
    """Writes structured audit log entries to the database."""

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession] | None = None
    ) -> None:
        self._session_factory = session_factory

    async def log(
        self,
        level: str,
        category: str,
        message: str,
        *,
        user_id: str | None = None,
        trade_id: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Write an audit log entry. Failures are logged, never raised."""
        try:
            factory = self._session_factory or get_session_factory()
            async with factory() as session:
                session.add(
                    AuditLog(
                        level=level,
                        category=category,
                        user_id=user_id,
                        trade_id=trade_id,
                        message=message,
                        details=json.dumps(details, default=str) if details else None,
                    )
                )
                await session.commit()
        except Exception as e:
            logger.error("Failed to write audit log: %s", e)

        log_level = getattr(logging, level.upper(), logging.INFO)
        logger.log(log_level, "[%s] %s %s", category, message, details or "")

    async def info(self, category: str, message: str, **kwargs: Any) -> None:
        await self.log("INFO", category, message, **kwargs)

    async def warn(self, category: str, message: str, **kwargs: Any) -> None:
        await self.log("WARNING", category, message, **kwargs)

    async def error(self, category: str, message: str, **kwargs: Any) -> None:
        await self.log("ERROR", category, message, **kwargs)
