"""Persistent duplex WebSocket transport for CDP.

The connection owns the socket lifecycle and a reader thread. It knows nothing
about CDP ids or commands: incoming text frames are handed to `on_message`,
and correlation lives in `dispatcher.CommandDispatcher`.
"""

from __future__ import annotations

import logging
import socket
import threading
from collections.abc import Callable
from contextlib import suppress
from typing import Any

import websocket

from .errors import CdpConnectionError

logger = logging.getLogger("mcp.mission.connection")

MessageHandler = Callable[[str], None]
ErrorHandler = Callable[[Exception], None]
LifecycleHandler = Callable[[], None]


class CdpConnection:
    """WebSocket channel emitting open/message/error/close callbacks."""

    def __init__(
        self,
        ws_url: str,
        *,
        timeout: float = 5.0,
        on_open: LifecycleHandler | None = None,
        on_message: MessageHandler | None = None,
        on_error: ErrorHandler | None = None,
        on_close: LifecycleHandler | None = None,
    ) -> None:
        self.ws_url = ws_url
        self.timeout = timeout
        self.on_open = on_open
        self.on_message = on_message
        self.on_error = on_error
        self.on_close = on_close
        self.ws: Any | None = None
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._close_notified = False
        self._reader: threading.Thread | None = None

    def __enter__(self) -> CdpConnection:
        self.open()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self.ws is not None and not self._closed.is_set()

    def open(self) -> None:
        if self.ws is not None:
            return
        try:
            ws = websocket.create_connection(self.ws_url, timeout=self.timeout, suppress_origin=True)
        except Exception as exc:  # noqa: BLE001
            raise CdpConnectionError(f"Failed to connect to {self.ws_url}: {exc}") from exc

        self.ws = ws
        if self._closed.is_set():
            # close() raced with the handshake.
            self._abort_socket()
            raise CdpConnectionError("Connection closed during connect")
        reader = threading.Thread(target=self._read_loop, name="cdp-mission-reader", daemon=True)
        self._reader = reader
        reader.start()
        logger.info("connected ws=%s", self.ws_url)
        self._emit(self.on_open)

    def send_text(self, text: str) -> None:
        ws = self.ws
        if ws is None or self._closed.is_set():
            raise CdpConnectionError("Connection is closed")
        try:
            ws.send(text)
        except Exception as exc:  # noqa: BLE001
            raise CdpConnectionError(f"Send failed: {exc}") from exc

    def close(self) -> None:
        """Close the channel. Safe to call more than once and from any thread."""
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
        self._abort_socket()

        reader = self._reader
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=2.0)
        self._notify_closed()

    def _read_loop(self) -> None:
        # The socket keeps the timeout it was opened with; sends share it, so the
        # reader must not shorten it. close() unblocks recv() by shutting the socket down.
        ws = self.ws
        while not self._closed.is_set():
            try:
                raw = ws.recv()
            except (websocket.WebSocketTimeoutException, TimeoutError, socket.timeout):
                continue
            except websocket.WebSocketConnectionClosedException:
                break
            except Exception as exc:  # noqa: BLE001
                if not self._closed.is_set():
                    logger.warning("recv failed ws=%s error=%s", self.ws_url, exc)
                    self._emit(self.on_error, exc)
                break

            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", errors="replace")
            if not raw:
                continue
            self._emit(self.on_message, raw)

        with self._lock:
            self._closed.set()
        self._abort_socket()
        self._notify_closed()

    def _abort_socket(self) -> None:
        # Raw socket shutdown; websocket-client close() can block on its own locks.
        ws = self.ws
        if ws is None:
            return
        sock = getattr(ws, "sock", None)
        if sock is not None:
            with suppress(Exception):
                sock.shutdown(socket.SHUT_RDWR)
            with suppress(Exception):
                sock.close()

    def _notify_closed(self) -> None:
        with self._lock:
            if self._close_notified:
                return
            self._close_notified = True
        logger.info("closed ws=%s", self.ws_url)
        self._emit(self.on_close)

    def _emit(self, handler: Callable[..., None] | None, *args: Any) -> None:
        if handler is None:
            return
        try:
            handler(*args)
        except Exception:
            logger.exception("connection handler failed")


__all__ = ["CdpConnection"]
