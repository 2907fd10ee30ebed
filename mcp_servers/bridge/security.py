"""Security gate applied in front of the relay.

Checks here never touch the peer: authentication, per-address rate limiting,
peer-upgrade origin validation and capped body reads all fail before a call
reaches the ConnectionRegistry.
"""

from __future__ import annotations

import hmac
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qs, urlsplit

from .config import BridgeConfig
from .errors import Forbidden, PayloadTooLarge, RateLimited, Unauthenticated

TOKEN_PARAM = "token"
BODY_CHUNK_SIZE = 64 * 1024


@dataclass
class RateLimitEntry:
    count: int
    window_reset_at: float


class RateLimiter:
    """Fixed-window request counter keyed by client address.

    Windows are reset lazily by the first request after ``window_reset_at``;
    there is no background sweep. Rejected requests are not counted.

    The table holds at most ``max_keys`` clients. When it is full of live
    windows, a new client is refused until the earliest window expires.
    """

    def __init__(
        self,
        *,
        limit: int = 100,
        window_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        max_keys: int = 10_000,
    ) -> None:
        self.limit = max(1, int(limit))
        self.window_s = max(0.001, float(window_s))
        self._clock = clock
        self._max_keys = max(1, int(max_keys))
        self._lock = threading.Lock()
        self._entries: dict[str, RateLimitEntry] = {}

    def hit(self, key: str) -> RateLimitEntry:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now >= entry.window_reset_at:
                if entry is None and len(self._entries) >= self._max_keys:
                    self._prune_expired(now)
                    if len(self._entries) >= self._max_keys:
                        earliest = min(e.window_reset_at for e in self._entries.values())
                        raise RateLimited("rate-limit table full", retry_after=earliest - now)
                entry = RateLimitEntry(count=0, window_reset_at=now + self.window_s)
                self._entries[key] = entry
            if entry.count >= self.limit:
                raise RateLimited(retry_after=entry.window_reset_at - now)
            entry.count += 1
            return RateLimitEntry(count=entry.count, window_reset_at=entry.window_reset_at)

    def peek(self, key: str) -> RateLimitEntry | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            return RateLimitEntry(count=entry.count, window_reset_at=entry.window_reset_at)

    def _prune_expired(self, now: float) -> None:
        # Caller holds the lock.
        for k in [k for k, e in self._entries.items() if now >= e.window_reset_at]:
            del self._entries[k]


def token_from_authorization(header: str | None) -> str | None:
    raw = (header or "").strip()
    scheme, _, value = raw.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip() or None


def token_matches(presented: str | None, expected: str) -> bool:
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


def strip_token(params: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in params.items() if k != TOKEN_PARAM}


class SecurityGate:
    def __init__(self, token: str, config: BridgeConfig | None = None, *, clock: Callable[[], float] = time.monotonic):
        if not token:
            raise ValueError("SecurityGate requires a non-empty token")
        self.config = config or BridgeConfig()
        self._token = token
        self._origin_re = self.config.peer_origin_re()
        self.rate_limiter = RateLimiter(
            limit=self.config.rate_limit,
            window_s=self.config.rate_window,
            clock=clock,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # HTTP requests
    # ─────────────────────────────────────────────────────────────────────────

    def authenticate(self, headers: Mapping[str, str], query: Mapping[str, Any]) -> None:
        """Accept ``Authorization: Bearer <token>`` or ``?token=<token>``."""
        if token_matches(token_from_authorization(headers.get("Authorization")), self._token):
            return
        q = query.get(TOKEN_PARAM)
        if isinstance(q, str) and token_matches(q, self._token):
            return
        raise Unauthenticated()

    def check_rate(self, client: str | None) -> RateLimitEntry:
        return self.rate_limiter.hit(client or "unknown")

    def origin_allowed(self, origin: str | None) -> bool:
        return bool(origin) and self._origin_re.match(str(origin)) is not None

    async def read_body(self, content: Any, *, declared_length: int | None = None) -> bytes:
        return await read_body_capped(content, limit=self.config.max_body_bytes, declared_length=declared_length)

    # ─────────────────────────────────────────────────────────────────────────
    # Peer transport upgrade
    # ─────────────────────────────────────────────────────────────────────────

    def validate_upgrade(self, origin: str | None, path: str) -> None:
        """Gate a peer WebSocket upgrade: extension origin (if any) and query token."""
        if origin is not None and not self.origin_allowed(origin):
            raise Forbidden(f"origin not allowed: {origin}")
        query = parse_qs(urlsplit(path or "").query)
        presented = (query.get(TOKEN_PARAM) or [None])[0]
        if not token_matches(presented, self._token):
            raise Unauthenticated()


async def read_body_capped(content: Any, *, limit: int, declared_length: int | None = None) -> bytes:
    """Read a request body chunk by chunk, aborting once it exceeds ``limit``."""
    if declared_length is not None and declared_length > limit:
        raise PayloadTooLarge(f"declared body of {declared_length} bytes exceeds {limit}")
    buf = bytearray()
    async for chunk in content.iter_chunked(BODY_CHUNK_SIZE):
        buf.extend(chunk)
        if len(buf) > limit:
            raise PayloadTooLarge(f"body exceeds {limit} bytes")
    return bytes(buf)
