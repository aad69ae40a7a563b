from __future__ import annotations

import contextlib
import json
import logging
import socket
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from urllib.error import URLError
from urllib.request import Request, urlopen

from .config import MissionConfig
from .errors import LaunchError

logger = logging.getLogger("mcp.mission.launcher")


@dataclass
class LaunchResult:
    command: list[str]
    started: bool
    message: str


class BrowserLauncher:
    """Start a profile-scoped Chromium with a DevTools port, optionally behind a SOCKS5 proxy."""

    def __init__(self, config: MissionConfig | None = None) -> None:
        self.config = config or MissionConfig.from_env()
        self.process: subprocess.Popen | None = None

    def __enter__(self) -> BrowserLauncher:
        result = self.ensure_running()
        if not result.started and not self.cdp_ready():
            raise LaunchError(result.message)
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()

    @property
    def _version_url(self) -> str:
        return f"http://{self.config.debug_host}:{self.config.debug_port}/json/version"

    def build_launch_command(self, extra: list[str] | None = None) -> list[str]:
        flags = [
            f"--remote-debugging-port={self.config.debug_port}",
            f"--user-data-dir={self.config.profile_path}",
            "--remote-allow-origins=*",
            "--no-first-run",
            "--no-default-browser-check",
        ]
        if proxy := self.config.proxy_server:
            flags.append(f"--proxy-server={proxy}")
        if self.config.headless:
            flags.append("--headless=new")
        else:
            flags.append("--start-maximized")
        if extra:
            flags.extend(extra)
        # Open a blank tab so /json lists at least one page.
        return [self.config.binary_path, *flags, "about:blank"]

    def cdp_ready(self, timeout: float = 0.4) -> bool:
        try:
            with urlopen(self._version_url, timeout=timeout) as resp:
                return resp.status == 200
        except (OSError, TimeoutError, URLError):
            return False

    def _port_available(self, timeout: float = 0.2) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            try:
                return sock.connect_ex(("127.0.0.1", self.config.debug_port)) != 0
            except OSError:
                return False

    def ensure_running(self, timeout: float = 10.0) -> LaunchResult:
        if self.cdp_ready():
            return LaunchResult([], False, "Browser already listening on debug port")
        if not self._port_available():
            return LaunchResult([], False, f"Port {self.config.debug_port} already in use")

        with contextlib.suppress(OSError):
            Path(self.config.profile_path).mkdir(parents=True, exist_ok=True)

        cmd = self.build_launch_command()
        try:
            self.process = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except OSError as exc:
            return LaunchResult(cmd, False, str(exc))
        logger.info("launched browser pid=%s profile=%s", self.process.pid, self.config.profile_id or "default")

        deadline = time.time() + timeout
        while time.time() < deadline:
            if self.cdp_ready():
                return LaunchResult(cmd, True, "Browser launched")
            if self.process.poll() is not None:
                return LaunchResult(cmd, False, f"Browser exited with code {self.process.returncode}")
            time.sleep(0.1)
        return LaunchResult(cmd, False, "Browser launch timed out")

    def ws_endpoint(self, timeout: float = 2.0) -> str:
        """Browser-level WebSocket URL from /json/version."""
        try:
            req = Request(self._version_url, headers={"User-Agent": "cdp-mission"})
            with urlopen(req, timeout=timeout) as resp:
                payload = json.loads(resp.read().decode())
        except (OSError, URLError, ValueError) as exc:
            raise LaunchError(f"Debug endpoint not reachable on port {self.config.debug_port}: {exc}") from exc
        ws_url = payload.get("webSocketDebuggerUrl") if isinstance(payload, dict) else None
        if not isinstance(ws_url, str) or not ws_url:
            raise LaunchError("Debug endpoint did not report webSocketDebuggerUrl")
        return ws_url

    def stop(self, *, timeout: float = 2.0) -> bool:
        """Stop the launcher-owned browser; terminate first, then kill."""
        proc = self.process
        if proc is None:
            return False
        if proc.poll() is not None:
            return True

        with contextlib.suppress(OSError):
            proc.terminate()
        try:
            proc.wait(timeout=max(0.1, float(timeout)))
        except subprocess.TimeoutExpired:
            with contextlib.suppress(OSError):
                proc.kill()
            with contextlib.suppress(subprocess.TimeoutExpired):
                proc.wait(timeout=1.0)
        logger.info("browser stopped pid=%s", proc.pid)
        return True


__all__ = ["BrowserLauncher", "LaunchResult"]
