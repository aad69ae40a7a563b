"""Automation-bridge child process.

The bridge gets the browser's debug endpoint through environment variables at
startup and nothing else; the supervisor only starts it, watches its exit code
and terminates it on shutdown.
"""

from __future__ import annotations

import contextlib
import logging
import os
import shlex
import subprocess
from collections.abc import Mapping

from .config import MissionConfig
from .errors import LaunchError

logger = logging.getLogger("mcp.mission.bridge")


def bridge_environment(config: MissionConfig, ws_endpoint: str, base: Mapping[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    env["BROWSER_WS_ENDPOINT"] = ws_endpoint
    if config.profile_id:
        env["BROWSER_PROFILE_ID"] = config.profile_id
    if config.api_token:
        env["BROWSER_API_TOKEN"] = config.api_token
    if config.proxy_host and config.proxy_port:
        env["PROXY_HOST"] = config.proxy_host
        env["PROXY_PORT"] = str(config.proxy_port)
    return env


class AutomationBridge:
    def __init__(self, command: str | list[str], env: Mapping[str, str] | None = None) -> None:
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        self.env = dict(env) if env is not None else None
        self.process: subprocess.Popen | None = None

    def __enter__(self) -> AutomationBridge:
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.terminate()

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    def start(self) -> None:
        if self.process is not None:
            return
        try:
            # Inherit stdio: the bridge talks to its own client directly.
            self.process = subprocess.Popen(self.command, env=self.env)
        except OSError as exc:
            raise LaunchError(f"Failed to start bridge {self.command[0]!r}: {exc}") from exc
        logger.info("bridge started pid=%s cmd=%s", self.process.pid, " ".join(self.command))

    def poll(self) -> int | None:
        return self.process.poll() if self.process is not None else None

    def wait(self, timeout: float | None = None) -> int:
        if self.process is None:
            raise LaunchError("Bridge is not running")
        code = self.process.wait(timeout=timeout)
        logger.info("bridge exited code=%s", code)
        return code

    def terminate(self, *, grace: float = 5.0) -> int | None:
        """SIGTERM, then SIGKILL after `grace` seconds. Safe to call twice."""
        proc = self.process
        if proc is None:
            return None
        if proc.poll() is not None:
            return proc.returncode
        with contextlib.suppress(OSError):
            proc.terminate()
        try:
            return proc.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            logger.warning("bridge did not exit after SIGTERM; killing pid=%s", proc.pid)
            with contextlib.suppress(OSError):
                proc.kill()
            return proc.wait(timeout=2.0)


__all__ = ["AutomationBridge", "bridge_environment"]
