"""Error hierarchy for the mission runner.

Every error raised by the transport, dispatcher and session driver derives from
`MissionError`, so entry points can catch one type at the process boundary.
"""

from __future__ import annotations


class MissionError(Exception):
    pass


class CdpConnectionError(MissionError, ConnectionError):
    """Transport-level failure: connect, send, or a channel closed underneath a request."""


class CommandTimeout(MissionError):
    def __init__(self, method: str, timeout: float) -> None:
        super().__init__(f"Command timeout: {method} ({timeout:g}s)")
        self.method = method
        self.timeout = timeout


class RemoteError(MissionError):
    """The remote peer answered a command with an error payload."""

    def __init__(self, message: str, *, method: str | None = None, code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.method = method
        self.code = code


class InputNotFound(MissionError):
    def __init__(self, selectors: list[str]) -> None:
        super().__init__("Search box not found")
        self.selectors = list(selectors)


class SessionTimeout(MissionError):
    def __init__(self, timeout: float) -> None:
        super().__init__(f"Browser automation timeout ({timeout:g}s)")
        self.timeout = timeout


class DiscoveryError(MissionError):
    pass


class MissionConfigError(MissionError):
    pass


class LaunchError(MissionError):
    pass


__all__ = [
    "CdpConnectionError",
    "CommandTimeout",
    "DiscoveryError",
    "InputNotFound",
    "LaunchError",
    "MissionConfigError",
    "MissionError",
    "RemoteError",
    "SessionTimeout",
]
