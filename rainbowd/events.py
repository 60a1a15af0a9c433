from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any

from .settings import settings

logger = logging.getLogger("rainbowd")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

_events: deque[dict[str, Any]] = deque(maxlen=max(1, settings.event_buffer))
_next_id = 0


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def configure_logging(level: str | None = None) -> None:
    """Install a single stderr handler on the root logger."""
    logging.basicConfig(
        level=_LEVELS.get((level or settings.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


def log_event(level: str, message: str, app: str | None = None, backend: str | None = None) -> None:
    """Log a lifecycle event and keep it in the recent-events feed.

    The feed lives in memory only and is bounded by RAINBOWD_EVENT_BUFFER.
    """
    global _next_id
    level = level.upper()
    prefix = ""
    if app:
        prefix = f"[{app}{'/' + backend if backend else ''}] "
    logger.log(_LEVELS.get(level, logging.INFO), "%s%s", prefix, message)

    _next_id += 1
    _events.append(
        {
            "id": _next_id,
            "ts": utc_now(),
            "level": "WARN" if level == "WARNING" else level,
            "app": app,
            "backend": backend,
            "message": message,
        }
    )


def latest_events(limit: int = 100, app: str | None = None) -> list[dict[str, Any]]:
    rows = [e for e in reversed(_events) if app is None or e["app"] == app]
    return rows[: max(0, limit)]


def clear_events() -> None:
    _events.clear()
