from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

VERSION = "1.0.0"

# Chrome extension origins are 32 chars in [a-p].
DEFAULT_PEER_ORIGIN_PATTERN = r"^chrome-extension://[a-p]{32}/?$"


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name) or default)
    except ValueError:
        return default


def _env_optional_int(name: str) -> int | None:
    raw = (os.environ.get(name) or "").strip()
    try:
        return int(raw) if raw else None
    except ValueError:
        return None


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name) or default)
    except ValueError:
        return default


def _env_flag(name: str) -> bool:
    return (os.environ.get(name) or "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class BridgeConfig:
    host: str = "127.0.0.1"
    http_port: int = 8620
    # None: the peer upgrades on the HTTP port; set for a dedicated peer listener.
    peer_port: int | None = None
    token: str | None = None
    token_path: str = field(default_factory=lambda: expand_path("~/.bridgemcp/token"))
    call_timeout: float = 30.0
    max_pending: int = 100
    rate_limit: int = 100
    rate_window: float = 60.0
    max_body_bytes: int = 1024 * 1024
    max_wait_seconds: float = 300.0
    peer_origin_pattern: str = DEFAULT_PEER_ORIGIN_PATTERN
    verbose: bool = False

    @classmethod
    def from_env(cls) -> BridgeConfig:
        host = (os.environ.get("BRIDGE_HOST") or "127.0.0.1").strip() or "127.0.0.1"
        http_port = _env_int("BRIDGE_PORT", 8620)
        token = (os.environ.get("BRIDGE_TOKEN") or "").strip() or None
        return cls(
            host=host,
            http_port=http_port,
            peer_port=_env_optional_int("BRIDGE_PEER_PORT"),
            token=token,
            token_path=expand_path(os.environ.get("BRIDGE_TOKEN_FILE") or "~/.bridgemcp/token"),
            call_timeout=_env_float("BRIDGE_CALL_TIMEOUT", 30.0),
            max_pending=_env_int("BRIDGE_MAX_PENDING", 100),
            rate_limit=_env_int("BRIDGE_RATE_LIMIT", 100),
            rate_window=_env_float("BRIDGE_RATE_WINDOW", 60.0),
            max_body_bytes=_env_int("BRIDGE_MAX_BODY_BYTES", 1024 * 1024),
            max_wait_seconds=_env_float("BRIDGE_MAX_WAIT", 300.0),
            peer_origin_pattern=os.environ.get("BRIDGE_PEER_ORIGIN") or DEFAULT_PEER_ORIGIN_PATTERN,
            verbose=_env_flag("BRIDGE_VERBOSE"),
        )

    def peer_origin_re(self) -> re.Pattern[str]:
        return re.compile(self.peer_origin_pattern)

    def clamp_wait(self, raw: object, *, default: float = 1.0) -> float:
        """Seconds for the local wait action, clamped to [0, max_wait_seconds]."""
        if raw is None or raw == "":
            seconds = default
        else:
            try:
                seconds = float(raw)  # type: ignore[arg-type]
            except (TypeError, ValueError):
                seconds = default
        if seconds != seconds:  # NaN
            seconds = default
        return max(0.0, min(seconds, float(self.max_wait_seconds)))
