from __future__ import annotations

import asyncio
import json
import logging
import secrets
import threading
import time
from collections import deque
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Protocol

from .errors import ActionFailed, CallTimeout, Overloaded, PeerDisconnected, PeerUnavailable

logger = logging.getLogger("mcp.bridge.registry")

DEFAULT_CALL_TIMEOUT = 30.0
DEFAULT_MAX_PENDING = 100


def _now_ms() -> int:
    return int(time.time() * 1000)


class PeerTransport(Protocol):
    async def send(self, message: str) -> None: ...


@dataclass(frozen=True)
class PeerInfo:
    agent: str | None = None
    version: str | None = None


@dataclass
class PendingCall:
    id: str
    action: str
    created_at: float
    deadline: float
    future: asyncio.Future
    timer: asyncio.TimerHandle | None = None


class ConnectionRegistry:
    """Owns the single peer slot and correlates calls with their replies.

    Design goals:
    - At most one peer: admission is a compare-and-swap on the slot, a second
      peer is refused while one is connected.
    - Fail fast: no peer or a full pending table fails the call immediately.
    - Replies are matched by id, never by order. Each pending call settles
      exactly once: reply, deadline or disconnect, whichever comes first.

    Slot, pending table and diagnostics are guarded by ``_lock``. Futures and
    timers belong to the event loop running the gateway; ``call()`` runs there,
    ``submit()`` is the thread-safe wrapper for other threads.
    """

    def __init__(
        self,
        *,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        max_pending: int = DEFAULT_MAX_PENDING,
    ) -> None:
        self.call_timeout = float(call_timeout)
        self.max_pending = max(1, int(max_pending))

        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._connected = threading.Event()

        self._transport: PeerTransport | None = None
        self._peer_info: PeerInfo | None = None
        self._connected_at_ms: int = 0
        self._last_seen_ms: int = 0

        self._pending: dict[str, PendingCall] = {}

        # small diagnostics buffer, surfaced by status()
        self._logs: deque[dict[str, Any]] = deque(maxlen=200)

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    # ─────────────────────────────────────────────────────────────────────────
    # Peer slot
    # ─────────────────────────────────────────────────────────────────────────

    def attach(self, transport: PeerTransport) -> bool:
        """Register ``transport`` as the peer. Returns False if the slot is taken."""
        with self._lock:
            if self._transport is not None:
                self._log("warn", "peer rejected: slot already taken")
                return False
            self._transport = transport
            self._peer_info = None
            self._connected_at_ms = _now_ms()
            self._last_seen_ms = self._connected_at_ms
            self._connected.set()
            self._log("info", "peer connected")
        logger.info("peer connected")
        return True

    def detach(self, transport: PeerTransport) -> int:
        """Release the slot if ``transport`` holds it; fail every outstanding call.

        Returns the number of calls rejected. A close callback from a transport
        that is not (or no longer) registered is ignored.
        """
        with self._lock:
            if self._transport is None or self._transport is not transport:
                return 0
            self._transport = None
            self._peer_info = None
            self._connected_at_ms = 0
            self._connected.clear()
            pending = list(self._pending.values())
            self._pending.clear()
            self._log("info", f"peer disconnected ({len(pending)} pending call(s) failed)")

        for call in pending:
            if call.timer is not None:
                call.timer.cancel()
            if not call.future.done():
                call.future.set_exception(PeerDisconnected())
        logger.info("peer disconnected pending_failed=%d", len(pending))
        return len(pending)

    def current_transport(self) -> PeerTransport | None:
        with self._lock:
            return self._transport

    def is_connected(self) -> bool:
        with self._lock:
            return self._transport is not None

    def wait_for_connection(self, *, timeout: float = 5.0) -> bool:
        """Block until a peer is attached or ``timeout`` elapses."""
        return bool(self._connected.wait(timeout=max(0.0, float(timeout))))

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    # ─────────────────────────────────────────────────────────────────────────
    # Calls
    # ─────────────────────────────────────────────────────────────────────────

    async def call(self, action: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> Any:
        """Send ``{id, action, params}`` to the peer and wait for its reply."""
        loop = asyncio.get_running_loop()
        deadline_s = float(timeout) if timeout is not None else self.call_timeout

        with self._lock:
            transport = self._transport
            if transport is None:
                raise PeerUnavailable()
            if len(self._pending) >= self.max_pending:
                raise Overloaded(f"{len(self._pending)} calls outstanding (capacity {self.max_pending})")
            call_id = self._new_id()
            now = time.monotonic()
            pending = PendingCall(
                id=call_id,
                action=action,
                created_at=now,
                deadline=now + deadline_s,
                future=loop.create_future(),
            )
            pending.timer = loop.call_later(deadline_s, self._expire, call_id)
            self._pending[call_id] = pending

        frame = {"id": call_id, "action": action, "params": params or {}}
        logger.debug("-> %s id=%s", action, call_id)
        try:
            await transport.send(json.dumps(frame, ensure_ascii=False))
        except Exception as exc:  # noqa: BLE001
            logger.warning("send to peer failed action=%s: %s", action, exc)
            self._settle(call_id, error=PeerDisconnected(f"send failed: {exc}"))

        try:
            return await pending.future
        finally:
            # Covers cancellation of the awaiting task; a no-op once settled.
            self._discard(call_id)

    def submit(self, action: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> Any:
        """Thread-safe blocking variant of ``call()`` for callers outside the loop."""
        loop = self._loop
        if loop is None or not loop.is_running():
            raise PeerUnavailable()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            raise RuntimeError("submit() called from the gateway loop; use await call()")
        if not self.is_connected():
            raise PeerUnavailable()

        deadline_s = float(timeout) if timeout is not None else self.call_timeout
        fut = asyncio.run_coroutine_threadsafe(self.call(action, params, timeout=deadline_s), loop)
        try:
            # The registry enforces the deadline; the extra margin only guards a stalled loop.
            return fut.result(timeout=deadline_s + 5.0)
        except FutureTimeoutError as exc:
            fut.cancel()
            raise CallTimeout(f"no reply for {action} within {deadline_s:.0f}s") from exc

    def _new_id(self) -> str:
        # Caller holds the lock.
        while True:
            call_id = secrets.token_hex(12)
            if call_id not in self._pending:
                return call_id

    def _expire(self, call_id: str) -> None:
        with self._lock:
            pending = self._pending.get(call_id)
        if pending is None:
            return
        waited = pending.deadline - pending.created_at
        logger.warning("call timed out action=%s id=%s", pending.action, call_id)
        self._settle(call_id, error=CallTimeout(f"no reply for {pending.action} within {waited:g}s"))

    def _settle(self, call_id: str, *, result: Any = None, error: BaseException | None = None) -> bool:
        """Resolve and remove one pending call. Returns False if it was already gone."""
        with self._lock:
            pending = self._pending.pop(call_id, None)
        if pending is None:
            return False
        if pending.timer is not None:
            pending.timer.cancel()
        if pending.future.done():
            return False
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(result)
        return True

    def _discard(self, call_id: str) -> None:
        with self._lock:
            pending = self._pending.pop(call_id, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()

    # ─────────────────────────────────────────────────────────────────────────
    # Inbound frames
    # ─────────────────────────────────────────────────────────────────────────

    def handle_frame(self, raw: str | bytes) -> None:
        """Consume one frame from the peer. Malformed frames are logged and dropped."""
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError) as exc:
            logger.warning("peer frame parse error: %s", exc)
            with self._lock:
                self._log("warn", f"parse error: {exc}")
            return
        if not isinstance(msg, dict):
            logger.warning("peer frame is not an object: %r", type(msg).__name__)
            return

        with self._lock:
            self._last_seen_ms = _now_ms()

        mtype = msg.get("type")
        if mtype == "response":
            self._on_response(msg)
            return
        if mtype == "connect":
            info = PeerInfo(
                agent=str(msg.get("agent") or "") or None,
                version=str(msg.get("version") or "") or None,
            )
            with self._lock:
                self._peer_info = info
                self._log("info", f"agent {info.agent} v{info.version}")
            logger.info("peer agent=%s version=%s", info.agent, info.version)
            return
        if mtype == "ping":
            return
        logger.debug("ignoring peer frame type=%r", mtype)

    def _on_response(self, msg: dict[str, Any]) -> None:
        raw_id = msg.get("id")
        if isinstance(raw_id, bool) or not isinstance(raw_id, (str, int)):
            logger.debug("dropping response without id")
            return
        call_id = str(raw_id)

        if msg.get("success") is True:
            settled = self._settle(call_id, result=msg.get("data"))
        else:
            err = msg.get("error")
            if isinstance(err, dict):
                err = err.get("message")
            settled = self._settle(call_id, error=ActionFailed(str(err) if err else None))

        if not settled:
            # Late reply after a timeout, or a duplicate: expected, not an error.
            logger.debug("dropping response for unknown id=%s", call_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Diagnostics
    # ─────────────────────────────────────────────────────────────────────────

    def _log(self, level: str, message: str) -> None:
        # Caller holds the lock.
        self._logs.append({"ts": _now_ms(), "level": level, "message": message[:2000]})

    def status(self) -> dict[str, Any]:
        with self._lock:
            connected = self._transport is not None
            info = self._peer_info
            return {
                "connected": connected,
                "pending": len(self._pending),
                "capacity": self.max_pending,
                "peer": (
                    {
                        **({"agent": info.agent} if info and info.agent else {}),
                        **({"version": info.version} if info and info.version else {}),
                        "connectedAtMs": self._connected_at_ms,
                        "lastSeenMs": self._last_seen_ms,
                    }
                    if connected
                    else None
                ),
            }

    def recent_logs(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._logs)
