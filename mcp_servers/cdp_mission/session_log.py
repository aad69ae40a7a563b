"""Per-session logging.

Log records from a session carry its `session_id`. A `SessionLog` handler keeps
only the records of one session, so two sessions in the same process never see
each other's entries.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Generator, MutableMapping
from contextlib import contextmanager
from typing import Any

SESSION_LOGGER_NAME = "mcp.mission.session"


def new_session_id() -> str:
    return uuid.uuid4().hex[:12]


class SessionLoggerAdapter(logging.LoggerAdapter):
    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("session_id", self.extra["session_id"])
        kwargs["extra"] = extra
        return f"[session={self.extra['session_id']}] {msg}", kwargs


def session_logger(session_id: str, name: str = SESSION_LOGGER_NAME) -> SessionLoggerAdapter:
    return SessionLoggerAdapter(logging.getLogger(name), {"session_id": session_id})


class SessionLog(logging.Handler):
    """Bounded in-memory record of one session's log entries."""

    def __init__(self, session_id: str, *, max_entries: int = 1000, level: int = logging.INFO) -> None:
        super().__init__(level=level)
        self.session_id = session_id
        self.max_entries = max_entries
        self._entries: list[dict[str, Any]] = []

    def emit(self, record: logging.LogRecord) -> None:
        if getattr(record, "session_id", None) != self.session_id:
            return
        self._entries.append(
            {
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created)),
                "level": record.levelname.lower(),
                "message": record.getMessage(),
            }
        )
        if len(self._entries) > self.max_entries:
            del self._entries[: len(self._entries) - self.max_entries]

    def entries(self) -> list[dict[str, Any]]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()


@contextmanager
def attached(log: SessionLog | None, name: str = SESSION_LOGGER_NAME) -> Generator[None, None, None]:
    """Attach `log` to the session logger for the duration of the block."""
    if log is None:
        yield
        return
    target = logging.getLogger(name)
    old_level = target.level
    if not target.isEnabledFor(log.level):
        target.setLevel(log.level)
    target.addHandler(log)
    try:
        yield
    finally:
        target.removeHandler(log)
        target.setLevel(old_level)


__all__ = [
    "SESSION_LOGGER_NAME",
    "SessionLog",
    "SessionLoggerAdapter",
    "attached",
    "new_session_id",
    "session_logger",
]
