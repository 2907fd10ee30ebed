#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[bridge] host={os.environ.get('BRIDGE_HOST', '127.0.0.1')} | "
    f"port={os.environ.get('BRIDGE_PORT', '8620')} | "
    f"peer_port={os.environ.get('BRIDGE_PEER_PORT', 'http port')} | "
    f"token_file={os.environ.get('BRIDGE_TOKEN_FILE', '~/.bridgemcp/token')}",
    file=sys.stderr,
)

from mcp_servers.bridge.main import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
