"""Shared-secret handling.

The token is generated once per process (unless supplied via BRIDGE_TOKEN) and
written to a user-private file so same-host clients can read it.
"""

from __future__ import annotations

import logging
import os
import secrets
from contextlib import suppress
from pathlib import Path

from .config import BridgeConfig

logger = logging.getLogger("mcp.bridge.token")

TOKEN_BYTES = 32


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def read_token(path: str | Path) -> str | None:
    p = Path(path)
    try:
        raw = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    token = raw.strip()
    return token or None


def write_token(path: str | Path, token: str) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with suppress(OSError):
        os.chmod(p.parent, 0o700)

    tmp = p.with_suffix(p.suffix + ".tmp")
    # Create with 0600 from the start so the secret is never world-readable.
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fp:
        fp.write(token + "\n")
    with suppress(OSError):
        os.chmod(tmp, 0o600)
    tmp.replace(p)
    with suppress(OSError):
        os.chmod(p, 0o600)
    return p


def ensure_token(config: BridgeConfig) -> str:
    """Resolve the process token and persist it to ``config.token_path``."""
    token = config.token or generate_token()
    path = write_token(config.token_path, token)
    config.token = token
    logger.info("token written to %s", path)
    return token
