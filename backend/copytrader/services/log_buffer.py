"""Logging setup: in-memory ring buffer, file handlers, and configuration.

Captures Python log records into a thread-safe ring buffer, separated by source
(``broker`` for HTTP and broker adapter traffic, ``app`` for everything else).
Disk logs are written to a per-run directory with one file per source.
"""

from __future__ import annotations

import logging
import pathlib
import threading
from collections import deque
from datetime import datetime
from typing import Any

BROKER_PREFIXES = ("copytrader.brokers", "httpx", "httpcore")


def source_for(logger_name: str) -> str:
    return "broker" if logger_name.startswith(BROKER_PREFIXES) else "app"


class LogBuffer:
    """Thread-safe ring buffer that stores recent log entries."""

    def __init__(self, max_entries: int = 2000) -> None:
        self._entries: deque[dict[str, Any]] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._seq = 0

    def append(self, entry: dict[str, Any]) -> None:
        with self._lock:
            self._seq += 1
            entry["seq"] = self._seq
            self._entries.append(entry)

    def get_entries(
        self,
        *,
        source: str | None = None,
        level: str | None = None,
        since_seq: int = 0,
        limit: int = 200,
    ) -> list[dict[str, Any]]:
        """Return entries, optionally filtered by source, level and sequence."""
        with self._lock:
            entries = list(self._entries)
        if source:
            entries = [e for e in entries if e["source"] == source]
        if level:
            entries = [e for e in entries if e["level"] == level.upper()]
        if since_seq:
            entries = [e for e in entries if e["seq"] > since_seq]
        return entries[-limit:]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    @property
    def latest_seq(self) -> int:
        with self._lock:
            return self._seq


class LogBufferHandler(logging.Handler):
    """Logging handler that writes formatted records into a :class:`LogBuffer`."""

    def __init__(self, buffer: LogBuffer) -> None:
        super().__init__()
        self.buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.buffer.append(
                {
                    "timestamp": record.created,
                    "level": record.levelname,
                    "source": source_for(record.name),
                    "logger": record.name,
                    "message": self.format(record),
                }
            )
        except Exception:
            self.handleError(record)


class _SourceFilter(logging.Filter):
    """Pass only records belonging to one source."""

    def __init__(self, source: str) -> None:
        super().__init__()
        self._source = source

    def filter(self, record: logging.LogRecord) -> bool:
        return source_for(record.name) == self._source


# Module-level singleton so it can be imported anywhere.
log_buffer = LogBuffer()

_LOG_FMT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str, log_base: pathlib.Path) -> pathlib.Path:
    """Set up console, in-memory buffer and per-run disk logging.

    *level* is a string like ``"DEBUG"`` or ``"INFO"``.
    *log_base* is the parent directory for run directories (e.g. ``backend/logs``).
    Returns the run directory.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(_LOG_FMT)

    logging.basicConfig(level=log_level, format=_LOG_FMT)
    root = logging.getLogger()

    buf_handler = LogBufferHandler(log_buffer)
    buf_handler.setFormatter(formatter)
    root.addHandler(buf_handler)

    log_dir = log_base / datetime.now().strftime("%Y%m%d_%H%M%S")
    log_dir.mkdir(parents=True, exist_ok=True)

    for source, filename in (("app", "app.log"), ("broker", "broker.log")):
        handler = logging.FileHandler(log_dir / filename)
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
        handler.addFilter(_SourceFilter(source))
        root.addHandler(handler)

    return log_dir
