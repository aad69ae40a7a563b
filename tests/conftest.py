from __future__ import annotations

import json
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

import pytest

from mcp_servers.cdp_mission.config import MissionConfig

Responder = Callable[[str, dict[str, Any]], Any]


class FakeCdpConnection:
    """In-process stand-in for CdpConnection.

    `responder(method, params)` returns the response `result`, raises
    `FakeRemoteError` for an error payload, or returns `NO_REPLY` to stay silent.
    """

    instances: list[FakeCdpConnection] = []

    def __init__(self, ws_url: str, *, timeout: float = 5.0, responder: Responder | None = None) -> None:
        self.ws_url = ws_url
        self.timeout = timeout
        self.responder = responder or (lambda _m, _p: {})
        self.on_message: Callable[[str], None] | None = None
        self.on_close: Callable[[], None] | None = None
        self.sent: list[dict[str, Any]] = []
        self.opened = False
        self.closed = False
        FakeCdpConnection.instances.append(self)

    @property
    def methods(self) -> list[str]:
        return [m["method"] for m in self.sent]

    def open(self) -> None:
        self.opened = True

    def send_text(self, text: str) -> None:
        if self.closed:
            raise ConnectionError("closed")
        msg = json.loads(text)
        self.sent.append(msg)
        try:
            result = self.responder(msg["method"], msg.get("params") or {})
        except FakeRemoteError as exc:
            reply: dict[str, Any] = {"id": msg["id"], "error": {"message": str(exc)}}
        else:
            if result is NO_REPLY:
                return
            reply = {"id": msg["id"], "result": result}
        assert self.on_message is not None
        self.on_message(json.dumps(reply))

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.on_close is not None:
            self.on_close()


class FakeRemoteError(Exception):
    pass


NO_REPLY = object()

EXTRACTED = {
    "searchResults": [{"type": "search", "title": "Result", "url": "https://r.example", "position": 1}],
    "shoppingResults": [],
    "imageResults": [],
    "totalResults": 1,
    "searchQuery": "abc",
    "timestamp": "2026-01-01T00:00:00.000Z",
}


def search_page_responder(*, input_found: bool = True, extracted: Any = None) -> Responder:
    """Answer the search script the way a page with (or without) a search box would."""

    def respond(method: str, params: dict[str, Any]) -> Any:
        if method != "Runtime.evaluate":
            return {}
        expr = params.get("expression", "")
        if "const selectors" in expr:
            if not input_found:
                return {"result": {"type": "object", "subtype": "null", "value": None}}
            return {"result": {"type": "string", "value": 'textarea[name="q"]'}}
        if "el.value +=" in expr:
            return {"result": {"type": "boolean", "value": True}}
        if "searchResults" in expr:
            return {"result": {"type": "object", "value": EXTRACTED if extracted is None else extracted}}
        return {"result": {"type": "undefined"}}

    return respond


@pytest.fixture
def fast_config() -> MissionConfig:
    return MissionConfig(
        query="abc",
        target_url="https://www.google.com",
        nav_settle_ms=0,
        submit_pause_ms=0,
        results_settle_ms=0,
        typing_min_ms=0,
        typing_max_ms=1,
        command_timeout=2.0,
        session_timeout=5.0,
    )


@pytest.fixture
def tabs() -> list[dict[str, Any]]:
    return [
        {"id": "t1", "type": "page", "webSocketDebuggerUrl": "ws://127.0.0.1:34299/devtools/page/t1"},
        {"id": "t2", "type": "page", "webSocketDebuggerUrl": "ws://127.0.0.1:34299/devtools/page/t2"},
    ]


@pytest.fixture
def fake_connections():
    FakeCdpConnection.instances = []
    yield FakeCdpConnection.instances
    FakeCdpConnection.instances = []


@pytest.fixture
def json_http_server():
    """Serve fixed JSON bodies by path on an ephemeral local port."""
    routes: dict[str, bytes] = {}

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:  # noqa: N802
            body = routes.get(self.path)
            if body is None:
                self.send_response(404)
                self.end_headers()
                return
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, *args: Any) -> None:
            return

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    def route(path: str, payload: Any, *, raw: bool = False) -> None:
        routes[path] = payload if raw else json.dumps(payload).encode()

    try:
        yield server.server_address[1], route
    finally:
        server.shutdown()
        server.server_close()
