"""
Command-line entry point for CDP missions.

    python -m mcp_servers.cdp_mission.main search --query "..."
    python -m mcp_servers.cdp_mission.main bridge [--search]
    python -m mcp_servers.cdp_mission.main missions
    python -m mcp_servers.cdp_mission.main mission path/to/mission.json
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from contextlib import ExitStack
from pathlib import Path
from typing import Any

from .bridge import AutomationBridge, bridge_environment
from .config import MissionConfig
from .errors import LaunchError, MissionError
from .launcher import BrowserLauncher
from .mission import MissionRunner, load_mission, mission_templates
from .session_driver import SearchSession

logger = logging.getLogger("mcp.mission")


class ShutdownRequested(SystemExit):
    """Raised from the signal handler so ExitStack cleanup runs on the main thread."""

    def __init__(self, signum: int) -> None:
        super().__init__(0)
        self.signum = signum


def _raise_shutdown(signum: int, _frame: Any) -> None:
    logger.info("Shutting down (signal %s)...", signal.Signals(signum).name)
    raise ShutdownRequested(signum)


def install_signal_handlers() -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _raise_shutdown)


def _print_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, indent=2) + "\n")
    sys.stdout.flush()


def cmd_search(config: MissionConfig, args: argparse.Namespace) -> int:
    session = SearchSession(config, query=args.query, target_url=args.url)
    result = session.run()
    _print_json(result)
    return 0


def cmd_missions(config: MissionConfig, args: argparse.Namespace) -> int:  # noqa: ARG001
    for template in mission_templates():
        sys.stdout.write(f"{template['type']}: {template['description']} (requires: {', '.join(template['requiredFields'])})\n")
        sys.stdout.write(f"  example: {json.dumps(template['example'], ensure_ascii=False)}\n")
    return 0


def cmd_mission(config: MissionConfig, args: argparse.Namespace) -> int:
    try:
        data = json.loads(Path(args.file).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise MissionError(f"Cannot read mission file {args.file}: {exc}") from exc
    spec = load_mission(data)
    report = MissionRunner(config).execute(spec)
    _print_json(report)
    return 0 if report.get("success") else 1


def cmd_bridge(config: MissionConfig, args: argparse.Namespace) -> int:
    """Launch the profile browser, start the bridge and block until it exits.

    Cleanup order on any exit path: search channel, browser, bridge.
    """
    launcher = BrowserLauncher(config)
    bridge = AutomationBridge(config.bridge_command)
    with ExitStack() as stack:
        # ExitStack unwinds in reverse: launcher.stop runs before bridge.terminate.
        stack.callback(bridge.terminate)
        stack.callback(launcher.stop)

        result = launcher.ensure_running()
        logger.info("launcher: %s", result.message)
        if not result.started and not launcher.cdp_ready():
            raise LaunchError(result.message)
        ws_endpoint = launcher.ws_endpoint()
        logger.info("Browser WS endpoint: %s", ws_endpoint)

        bridge.env = bridge_environment(config, ws_endpoint)
        bridge.start()

        if args.search:
            session = SearchSession(config)
            stack.callback(session.close)
            try:
                _print_json(session.run())
            except MissionError as exc:
                logger.error("Search failed: %s", exc)

        code = bridge.wait()
        logger.info("Bridge exited with code: %s", code)
        return 0 if code == 0 else 1


COMMANDS = {
    "search": cmd_search,
    "bridge": cmd_bridge,
    "missions": cmd_missions,
    "mission": cmd_mission,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cdp-mission", description="Drive a debuggable browser over CDP")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    search = sub.add_parser("search", help="Run one search session against the first browser tab")
    search.add_argument("--query", default=None, help="Query text (default: MISSION_QUERY)")
    search.add_argument("--url", default=None, help="Target URL (default: MISSION_URL)")

    bridge = sub.add_parser("bridge", help="Launch the profile browser and the automation bridge")
    bridge.add_argument("--search", action="store_true", help="Also run one search session once the bridge is up")

    sub.add_parser("missions", help="List mission types")

    mission = sub.add_parser("mission", help="Execute a mission described by a JSON file")
    mission.add_argument("file", help="Mission JSON file")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    install_signal_handlers()
    try:
        config = MissionConfig.from_env()
        return COMMANDS[args.command](config, args)
    except ShutdownRequested:
        logger.info("Cleanup completed")
        return 0
    except MissionError as exc:
        logger.error("Mission failed: %s", exc)
        return 1
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
