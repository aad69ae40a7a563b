"""Search session driver.

Runs one fixed script over a CDP page connection:

    discover -> connect -> enable domains -> navigate -> locate input
             -> type (human cadence) -> submit -> wait -> extract

Commands are issued strictly one after another. A wall-clock watchdog bounds
the whole run; when it fires, the channel is closed and the run raises
`SessionTimeout` whichever state it was in. Every exit path closes the channel.
"""

from __future__ import annotations

import random
import threading
from collections.abc import Callable
from enum import Enum
from typing import Any

from .config import MissionConfig
from .connection import CdpConnection
from .dispatcher import CommandDispatcher
from .errors import InputNotFound, MissionError, SessionTimeout
from .http_client import first_tab_ws_url, get_browser_tabs
from .page import evaluate, key_events
from .page_scripts import append_char_script, extract_results_script, locate_input_script
from .session_log import SessionLog, attached, new_session_id, session_logger


class SessionState(str, Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    CONNECTING = "connecting"
    DOMAINS_ENABLING = "domains_enabling"
    NAVIGATING = "navigating"
    LOCATING_INPUT = "locating_input"
    TYPING = "typing"
    SUBMITTING = "submitting"
    WAITING = "waiting"
    EXTRACTING = "extracting"
    DONE = "done"
    INPUT_NOT_FOUND = "input_not_found"
    ERRORED = "errored"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = frozenset(
    {SessionState.DONE, SessionState.INPUT_NOT_FOUND, SessionState.ERRORED, SessionState.TIMED_OUT}
)

REQUIRED_DOMAINS = ("Runtime.enable", "Page.enable", "DOM.enable")

TabsProvider = Callable[[MissionConfig], list[dict[str, Any]]]
ConnectionFactory = Callable[..., Any]


class SearchSession:
    """One search run against the first tab of a debuggable browser."""

    def __init__(
        self,
        config: MissionConfig,
        *,
        query: str | None = None,
        target_url: str | None = None,
        rng: random.Random | None = None,
        tabs_provider: TabsProvider = get_browser_tabs,
        connection_factory: ConnectionFactory = CdpConnection,
        session_id: str | None = None,
        log: SessionLog | None = None,
    ) -> None:
        self.config = config
        self.query = config.query if query is None else query
        self.target_url = target_url or config.target_url
        self.rng = rng or random.Random()
        self.session_id = session_id or new_session_id()
        self.log = log
        self.logger = session_logger(self.session_id)
        self.state = SessionState.IDLE
        self.history: list[SessionState] = [SessionState.IDLE]
        self.connection: Any | None = None
        self.dispatcher: CommandDispatcher | None = None
        self.selector: str | None = None
        self.typing_delays: list[float] = []
        self.result: Any = None

        self._tabs_provider = tabs_provider
        self._connection_factory = connection_factory
        self._lock = threading.Lock()
        self._abort = threading.Event()
        self._timed_out = False

    # ─────────────────────────────────────────────────────────────────────────
    # Run
    # ─────────────────────────────────────────────────────────────────────────

    def run(self) -> Any:
        """Run the script to completion and return the extracted data."""
        if self.state is not SessionState.IDLE:
            raise MissionError(f"Session already used (state={self.state.value})")

        with attached(self.log):
            self.logger.info('Starting search query="%s" url=%s', self.query, self.target_url)
            watchdog = threading.Timer(self.config.session_timeout, self._on_deadline)
            watchdog.daemon = True
            watchdog.start()
            try:
                self.result = self._run_steps()
            except Exception as exc:
                if self._timed_out:
                    self._set_state(SessionState.TIMED_OUT)
                    self.logger.error("Session timed out in %s", self.history[-2].value)
                    if isinstance(exc, SessionTimeout):
                        raise
                    raise SessionTimeout(self.config.session_timeout) from exc
                if isinstance(exc, InputNotFound):
                    self._set_state(SessionState.INPUT_NOT_FOUND)
                else:
                    self._set_state(SessionState.ERRORED)
                self.logger.error("Browser automation error: %s", exc)
                raise
            finally:
                watchdog.cancel()
                self.close()

            self._set_state(SessionState.DONE)
            self.logger.info("Search completed")
            return self.result

    def _run_steps(self) -> Any:
        self._set_state(SessionState.DISCOVERING)
        tabs = self._tabs_provider(self.config)
        ws_url = first_tab_ws_url(tabs)
        self._check_abort()

        self._set_state(SessionState.CONNECTING)
        self._connect(ws_url)

        self._set_state(SessionState.DOMAINS_ENABLING)
        for method in REQUIRED_DOMAINS:
            self._call(method)

        self._set_state(SessionState.NAVIGATING)
        self.logger.info("Navigating to %s", self.target_url)
        self._call("Page.navigate", {"url": self.target_url})
        self._wait_ms(self.config.nav_settle_ms)

        self._set_state(SessionState.LOCATING_INPUT)
        self.selector = self.locate_input()

        self._set_state(SessionState.TYPING)
        self.logger.info('Typing "%s"', self.query)
        self.typing_delays = self.type_text(self.query, self.selector)

        self._set_state(SessionState.SUBMITTING)
        self._wait_ms(self.config.submit_pause_ms)
        self.press_key(self.config.submit_key)

        self._set_state(SessionState.WAITING)
        self._wait_ms(self.config.results_settle_ms)

        self._set_state(SessionState.EXTRACTING)
        self.logger.info("Extracting search results")
        return self.evaluate(extract_results_script(self.query))

    # ─────────────────────────────────────────────────────────────────────────
    # Actions
    # ─────────────────────────────────────────────────────────────────────────

    def locate_input(self) -> str:
        selectors = list(self.config.input_selectors)
        found = self.evaluate(locate_input_script(selectors))
        if not isinstance(found, str) or not found:
            raise InputNotFound(selectors)
        self.logger.info("Search box found: %s", found)
        return found

    def type_text(self, text: str, selector: str) -> list[float]:
        """Append `text` one character at a time; return the delays used (seconds)."""
        delays: list[float] = []
        for char in text:
            self.evaluate(append_char_script(selector, char))
            delay = self.typing_delay()
            delays.append(delay)
            self._wait(delay)
        return delays

    def typing_delay(self) -> float:
        low = self.config.typing_min_ms
        high = self.config.typing_max_ms
        return (low + self.rng.random() * (high - low)) / 1000.0

    def press_key(self, key: str) -> None:
        for params in key_events(key):
            self._call("Input.dispatchKeyEvent", params)

    def evaluate(self, expression: str) -> Any:
        """Run `Runtime.evaluate` and return the value, mapping JS exceptions to RemoteError."""
        return evaluate(self._call, expression)

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    def _connect(self, ws_url: str) -> None:
        self.logger.info("Connecting to browser: %s", ws_url)
        conn = self._connection_factory(ws_url, timeout=self.config.command_timeout)
        dispatcher = CommandDispatcher(conn, timeout=self.config.command_timeout)
        conn.on_message = dispatcher.handle_message
        conn.on_close = lambda: dispatcher.close("Connection closed")
        with self._lock:
            self.connection = conn
            self.dispatcher = dispatcher
        conn.open()
        self._check_abort()

    def _call(self, method: str, params: dict[str, Any] | None = None) -> Any:
        self._check_abort()
        dispatcher = self.dispatcher
        if dispatcher is None:
            raise MissionError("Session is not connected")
        return dispatcher.call(method, params)

    def _wait_ms(self, ms: float) -> None:
        self._wait(ms / 1000.0)

    def _wait(self, seconds: float) -> None:
        if self._abort.wait(max(0.0, seconds)):
            raise SessionTimeout(self.config.session_timeout)

    def _check_abort(self) -> None:
        if self._abort.is_set():
            raise SessionTimeout(self.config.session_timeout)

    def _on_deadline(self) -> None:
        self._timed_out = True
        self._abort.set()
        self.close(reason="Session timeout")

    def close(self, reason: str = "Session closed") -> None:
        """Close the channel and fail any in-flight command. Idempotent."""
        with self._lock:
            conn = self.connection
            dispatcher = self.dispatcher
        if dispatcher is not None:
            dispatcher.close(reason)
        if conn is not None:
            conn.close()

    def _set_state(self, state: SessionState) -> None:
        self.state = state
        self.history.append(state)
        self.logger.debug("state=%s", state.value)


def run_search(config: MissionConfig, **kwargs: Any) -> Any:
    """Convenience wrapper: run one `SearchSession` and return its result."""
    return SearchSession(config, **kwargs).run()


__all__ = ["REQUIRED_DOMAINS", "SearchSession", "SessionState", "TERMINAL_STATES", "run_search"]
