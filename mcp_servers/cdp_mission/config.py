from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_BINARY_CANDIDATES: list[str] = [
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/local/bin/chromium",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    "C:\\Program Files\\Chromium\\Application\\chrome.exe",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/opt/google/chrome/chrome",
    "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
    # Snap builds ignore --user-data-dir; last resort only.
    "/snap/bin/chromium",
]

DEFAULT_INPUT_SELECTORS: list[str] = [
    'input[name="q"]',
    'textarea[name="q"]',
    "#APjFqb",
]

DEFAULT_BRIDGE_COMMAND = "npx @browsermcp/mcp@latest"


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass
class MissionConfig:
    debug_host: str = "localhost"
    debug_port: int = 34299
    command_timeout: float = 10.0
    session_timeout: float = 30.0
    discovery_timeout: float = 5.0
    typing_min_ms: float = 50.0
    typing_max_ms: float = 150.0
    nav_settle_ms: float = 3000.0
    submit_pause_ms: float = 1000.0
    results_settle_ms: float = 3000.0
    submit_key: str = "Enter"
    query: str = "iPhone 16 Pro Max 512GB"
    target_url: str = "https://www.google.com"
    input_selectors: list[str] = field(default_factory=lambda: list(DEFAULT_INPUT_SELECTORS))
    profile_id: str = ""
    api_token: str = ""
    proxy_host: str = ""
    proxy_port: int = 0
    bridge_command: str = DEFAULT_BRIDGE_COMMAND
    binary_path: str = "google-chrome"
    profiles_dir: str = "~/.cdp-mission/profiles"
    headless: bool = True

    def __post_init__(self) -> None:
        if self.typing_min_ms < 0 or self.typing_max_ms < self.typing_min_ms:
            raise ValueError(
                f"Invalid typing delay interval [{self.typing_min_ms}, {self.typing_max_ms})"
            )
        if self.command_timeout <= 0 or self.session_timeout <= 0:
            raise ValueError("Timeouts must be positive")

    @property
    def discovery_url(self) -> str:
        return f"http://{self.debug_host}:{self.debug_port}/json"

    @property
    def proxy_server(self) -> str | None:
        if not self.proxy_host or not self.proxy_port:
            return None
        return f"socks5://{self.proxy_host}:{self.proxy_port}"

    @property
    def profile_path(self) -> str:
        return str(Path(expand_path(self.profiles_dir)) / (self.profile_id or "default"))

    @classmethod
    def detect_binary(cls) -> str:
        env_path = os.environ.get("MISSION_BROWSER_BINARY")
        if env_path:
            return expand_path(env_path)
        for candidate in DEFAULT_BINARY_CANDIDATES:
            path = Path(candidate)
            if path.exists() and os.access(str(path), os.X_OK):
                return str(path)
        # Rely on PATH lookup.
        return "google-chrome"

    @classmethod
    def from_env(cls) -> MissionConfig:
        selectors_raw = os.environ.get("MISSION_INPUT_SELECTORS", "")
        selectors = [s.strip() for s in selectors_raw.split("|") if s.strip()] or list(DEFAULT_INPUT_SELECTORS)
        return cls(
            debug_host=os.environ.get("MISSION_DEBUG_HOST", "localhost"),
            debug_port=_env_int("MISSION_DEBUG_PORT", 34299),
            command_timeout=_env_float("MISSION_COMMAND_TIMEOUT", 10.0),
            session_timeout=_env_float("MISSION_SESSION_TIMEOUT", 30.0),
            typing_min_ms=_env_float("MISSION_TYPING_MIN_MS", 50.0),
            typing_max_ms=_env_float("MISSION_TYPING_MAX_MS", 150.0),
            nav_settle_ms=_env_float("MISSION_NAV_SETTLE_MS", 3000.0),
            submit_pause_ms=_env_float("MISSION_SUBMIT_PAUSE_MS", 1000.0),
            results_settle_ms=_env_float("MISSION_RESULTS_SETTLE_MS", 3000.0),
            query=os.environ.get("MISSION_QUERY", "iPhone 16 Pro Max 512GB"),
            target_url=os.environ.get("MISSION_URL", "https://www.google.com"),
            input_selectors=selectors,
            profile_id=os.environ.get("MISSION_PROFILE_ID", ""),
            api_token=os.environ.get("MISSION_API_TOKEN", ""),
            proxy_host=os.environ.get("MISSION_PROXY_HOST", ""),
            proxy_port=_env_int("MISSION_PROXY_PORT", 0),
            bridge_command=os.environ.get("MISSION_BRIDGE_COMMAND", DEFAULT_BRIDGE_COMMAND),
            binary_path=cls.detect_binary(),
            profiles_dir=os.environ.get("MISSION_PROFILES_DIR", "~/.cdp-mission/profiles"),
            headless=os.environ.get("MISSION_HEADLESS", "1") == "1",
        )
