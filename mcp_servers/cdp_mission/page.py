"""Page-level CDP helpers shared by the search session and the mission runner."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Generator
from contextlib import contextmanager
from typing import Any

from .config import MissionConfig
from .connection import CdpConnection
from .dispatcher import CommandDispatcher
from .errors import RemoteError
from .http_client import first_tab_ws_url, get_browser_tabs

logger = logging.getLogger("mcp.mission.page")

CallFn = Callable[..., Any]

# Extra fields CDP needs for keys that should trigger default actions.
KEY_DEFINITIONS: dict[str, dict[str, Any]] = {
    "Enter": {"code": "Enter", "windowsVirtualKeyCode": 13, "nativeVirtualKeyCode": 13, "text": "\r"},
    "Tab": {"code": "Tab", "windowsVirtualKeyCode": 9, "nativeVirtualKeyCode": 9},
    "Escape": {"code": "Escape", "windowsVirtualKeyCode": 27, "nativeVirtualKeyCode": 27},
}


def evaluate(call: CallFn, expression: str) -> Any:
    """Run `Runtime.evaluate` by value; JS exceptions become RemoteError."""
    res = call("Runtime.evaluate", {"expression": expression, "returnByValue": True, "awaitPromise": True})
    if not isinstance(res, dict):
        return None
    details = res.get("exceptionDetails")
    if isinstance(details, dict):
        exc = details.get("exception") if isinstance(details.get("exception"), dict) else {}
        message = exc.get("description") or details.get("text") or "JavaScript evaluation failed"
        raise RemoteError(str(message), method="Runtime.evaluate")
    obj = res.get("result")
    if not isinstance(obj, dict):
        return None
    if obj.get("type") == "undefined" or obj.get("subtype") == "null":
        return None
    return obj.get("value")


def key_events(key: str) -> list[dict[str, Any]]:
    """Params for a keyDown/keyUp pair of `Input.dispatchKeyEvent`."""
    extra = KEY_DEFINITIONS.get(key, {})
    down = {"type": "keyDown", "key": key, **extra}
    up = {"type": "keyUp", "key": key, **{k: v for k, v in extra.items() if k != "text"}}
    return [down, up]


class PageClient:
    """Thin command surface over a dispatcher bound to one page."""

    def __init__(self, dispatcher: CommandDispatcher) -> None:
        self.dispatcher = dispatcher

    def call(self, method: str, params: dict[str, Any] | None = None) -> Any:
        return self.dispatcher.call(method, params)

    def evaluate(self, expression: str) -> Any:
        return evaluate(self.call, expression)

    def enable_domains(self, *methods: str) -> None:
        for method in methods:
            self.call(method)

    def navigate(self, url: str) -> Any:
        return self.call("Page.navigate", {"url": url})

    def press_key(self, key: str) -> None:
        for params in key_events(key):
            self.call("Input.dispatchKeyEvent", params)

    def query_texts(self, selectors: list[str], *, limit: int = 20) -> dict[str, list[str]]:
        """Text content of the elements matching each selector."""
        expression = f"""
(() => {{
  const out = {{}};
  for (const sel of {json.dumps(list(selectors))}) {{
    out[sel] = Array.from(document.querySelectorAll(sel)).slice(0, {int(limit)})
      .map(el => (el.textContent || '').trim());
  }}
  return out;
}})()
""".strip()
        value = self.evaluate(expression)
        return value if isinstance(value, dict) else {}

    def set_value(self, selector: str, value: str) -> bool:
        expression = f"""
(() => {{
  const el = document.querySelector({json.dumps(selector)});
  if (!el) return false;
  el.focus();
  el.value = {json.dumps(value)};
  el.dispatchEvent(new Event('input', {{ bubbles: true }}));
  el.dispatchEvent(new Event('change', {{ bubbles: true }}));
  return true;
}})()
""".strip()
        return bool(self.evaluate(expression))

    def click(self, selector: str) -> bool:
        expression = f"""
(() => {{
  const el = document.querySelector({json.dumps(selector)});
  if (!el) return false;
  el.click();
  return true;
}})()
""".strip()
        return bool(self.evaluate(expression))


@contextmanager
def open_page(
    config: MissionConfig,
    *,
    tabs_provider: Callable[[MissionConfig], list[dict[str, Any]]] = get_browser_tabs,
    connection_factory: Callable[..., Any] = CdpConnection,
) -> Generator[PageClient, None, None]:
    """Connect to the first discovered tab; the channel is closed on every exit path."""
    ws_url = first_tab_ws_url(tabs_provider(config))
    conn = connection_factory(ws_url, timeout=config.command_timeout)
    dispatcher = CommandDispatcher(conn, timeout=config.command_timeout)
    conn.on_message = dispatcher.handle_message
    conn.on_close = lambda: dispatcher.close("Connection closed")
    conn.open()
    logger.info("page channel open ws=%s", ws_url)
    try:
        yield PageClient(dispatcher)
    finally:
        dispatcher.close("Page channel closed")
        conn.close()


__all__ = ["KEY_DEFINITIONS", "PageClient", "evaluate", "key_events", "open_page"]
