"""CDP command/response correlation.

Each outgoing command gets a fresh integer id. A pending entry holds the
command's future and its timeout timer until exactly one of three things
happens: the matching response arrives, the timer fires, or the dispatcher is
closed. The entry is always removed from the map before its future is settled,
so whichever comes second finds nothing and does nothing.
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Protocol

from .errors import CdpConnectionError, CommandTimeout, RemoteError

logger = logging.getLogger("mcp.mission.dispatcher")

DEFAULT_COMMAND_TIMEOUT = 10.0


class TextTransport(Protocol):
    def send_text(self, text: str) -> None: ...


@dataclass
class PendingEntry:
    id: int
    method: str
    future: Future
    timer: threading.Timer | None = None


class CommandDispatcher:
    """Assign ids, track in-flight commands and settle them by response id."""

    def __init__(self, transport: TextTransport, *, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> None:
        self.transport = transport
        self.timeout = float(timeout)
        self._lock = threading.Lock()
        self._next_id = 1
        self._pending: dict[int, PendingEntry] = {}
        self._closed_reason: str | None = None

    @property
    def last_id(self) -> int:
        """Most recently assigned id (0 before the first send)."""
        with self._lock:
            return self._next_id - 1

    def pending_ids(self) -> list[int]:
        with self._lock:
            return sorted(self._pending)

    def send(self, method: str, params: dict[str, Any] | None = None) -> Future:
        """Transmit a command and return a future for its result."""
        fut: Future = Future()
        with self._lock:
            if self._closed_reason is not None:
                fut.set_exception(CdpConnectionError(self._closed_reason))
                return fut
            msg_id = self._next_id
            self._next_id += 1
            entry = PendingEntry(id=msg_id, method=method, future=fut)
            self._pending[msg_id] = entry

        timer = threading.Timer(self.timeout, self._expire, args=(msg_id,))
        timer.daemon = True
        entry.timer = timer
        timer.start()

        payload = {"id": msg_id, "method": method, "params": params or {}}
        try:
            self.transport.send_text(json.dumps(payload, ensure_ascii=False))
        except Exception as exc:  # noqa: BLE001
            err = exc if isinstance(exc, CdpConnectionError) else CdpConnectionError(str(exc))
            self._settle(msg_id, error=err)
        else:
            logger.debug("sent id=%d method=%s", msg_id, method)
        return fut

    def call(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Send a command and block until its outcome is known."""
        # The dispatcher's own timer settles the future; no extra wait bound needed.
        return self.send(method, params).result()

    def handle_message(self, raw: str | bytes) -> None:
        """Route one incoming frame. Unmatched frames are dropped."""
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("dropped non-JSON frame")
            return
        if not isinstance(data, dict):
            return
        msg_id = data.get("id")
        # CDP events carry "method" and no id.
        if not isinstance(msg_id, int) or isinstance(msg_id, bool):
            return

        if "error" in data:
            err = data.get("error")
            message = "Unknown remote error"
            code = None
            if isinstance(err, dict):
                if isinstance(err.get("message"), str):
                    message = err["message"]
                if isinstance(err.get("code"), int):
                    code = err["code"]
            elif err is not None:
                message = str(err)
            self._settle(msg_id, error=RemoteError(message, code=code), remote=True)
            return

        self._settle(msg_id, result=data.get("result", {}))

    def close(self, reason: str = "Connection closed") -> None:
        """Cancel every timer and fail every pending command. Idempotent."""
        with self._lock:
            if self._closed_reason is None:
                self._closed_reason = reason
            pending = list(self._pending.values())
            self._pending.clear()
        for entry in pending:
            if entry.timer is not None:
                entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(CdpConnectionError(f"{reason}: {entry.method}"))
        if pending:
            logger.info("abandoned %d pending command(s): %s", len(pending), reason)

    def _expire(self, msg_id: int) -> None:
        with self._lock:
            entry = self._pending.get(msg_id)
        if entry is None:
            return
        logger.warning("timeout id=%d method=%s after %.1fs", msg_id, entry.method, self.timeout)
        self._settle(msg_id, error=CommandTimeout(entry.method, self.timeout))

    def _settle(
        self,
        msg_id: int,
        *,
        result: Any = None,
        error: Exception | None = None,
        remote: bool = False,
    ) -> bool:
        with self._lock:
            entry = self._pending.pop(msg_id, None)
        if entry is None:
            return False
        if entry.timer is not None:
            entry.timer.cancel()
        if error is not None:
            if remote and isinstance(error, RemoteError):
                error.method = entry.method
            entry.future.set_exception(error)
        else:
            entry.future.set_result(result)
        return True


__all__ = ["CommandDispatcher", "PendingEntry", "TextTransport", "DEFAULT_COMMAND_TIMEOUT"]
