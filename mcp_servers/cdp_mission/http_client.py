from __future__ import annotations

import json
import logging
from typing import Any
from urllib.error import URLError
from urllib.request import Request, urlopen

from .config import MissionConfig
from .errors import DiscoveryError

logger = logging.getLogger("mcp.mission.discovery")


def http_get_json(url: str, timeout: float = 5.0) -> Any:
    """Fetch and decode a JSON document."""
    req = Request(url, headers={"User-Agent": "cdp-mission/1.0"})
    try:
        with urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode())
    except (TimeoutError, URLError, OSError) as exc:
        raise DiscoveryError(f"Discovery request failed: {url}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise DiscoveryError(f"Discovery response is not JSON: {url}") from exc


def get_browser_tabs(config: MissionConfig) -> list[dict[str, Any]]:
    """Return the tab descriptors listed by the debug endpoint's `/json` path.

    An empty list is a valid answer; deciding what to do with it is up to the caller.
    """
    payload = http_get_json(config.discovery_url, timeout=config.discovery_timeout)
    if not isinstance(payload, list):
        raise DiscoveryError("Malformed discovery response: expected a list of tabs")
    tabs = [tab for tab in payload if isinstance(tab, dict)]
    logger.debug("discovery url=%s tabs=%d", config.discovery_url, len(tabs))
    return tabs


def first_tab_ws_url(tabs: list[dict[str, Any]]) -> str:
    """Pick the first descriptor unconditionally and return its WebSocket URL."""
    if not tabs:
        raise DiscoveryError("No browser tabs available")
    ws_url = tabs[0].get("webSocketDebuggerUrl")
    if not isinstance(ws_url, str) or not ws_url:
        raise DiscoveryError("First browser tab has no webSocketDebuggerUrl")
    return ws_url


__all__ = ["first_tab_ws_url", "get_browser_tabs", "http_get_json"]
