#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[mission] debug={os.environ.get('MISSION_DEBUG_HOST', 'localhost')}:{os.environ.get('MISSION_DEBUG_PORT', '34299')} | "
    f"profile={os.environ.get('MISSION_PROFILE_ID', 'default')} | "
    f"bridge={os.environ.get('MISSION_BRIDGE_COMMAND', 'npx @browsermcp/mcp@latest')}",
    file=sys.stderr,
)

from mcp_servers.cdp_mission.main import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
