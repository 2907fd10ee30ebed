from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
import threading
import time
from collections.abc import Callable
from typing import Any
from urllib.parse import urlencode, urlsplit, urlunsplit

from .config import VERSION
from .gateway import _import_websockets

logger = logging.getLogger("mcp.bridge.peer")

RETRY_DELAY_S = 3.0
PING_INTERVAL_S = 10.0

BLOCKED_SCHEMES = frozenset({"javascript", "file", "data", "vbscript"})
# action -> params carrying URLs the agent will open
_URL_PARAMS: dict[str, str] = {"navigate": "url", "newTab": "url", "openUrlsInGroup": "urls"}


def _now_ms() -> int:
    return int(time.time() * 1000)


def validate_url(url: Any) -> None:
    if not url:
        return
    scheme = str(url).split(":", 1)[0].strip().lower()
    if scheme in BLOCKED_SCHEMES:
        raise ValueError(f"Blocked URL scheme: {scheme}. Only http/https URLs are allowed.")


def check_action_urls(action: str, params: dict[str, Any]) -> None:
    key = _URL_PARAMS.get(action)
    if key is None:
        return
    value = params.get(key)
    for url in value if isinstance(value, list) else [value]:
        validate_url(url)


def with_token(url: str, token: str) -> str:
    parts = urlsplit(url)
    query = f"{parts.query}&" if parts.query else ""
    return urlunsplit((parts.scheme, parts.netloc, parts.path or "/", query + urlencode({"token": token}), ""))


class PeerAgent:
    """Browser-side agent: keeps one transport to the relay and executes actions.

    - Never opens a second transport while one is open.
    - Reconnects a fixed delay after any close or connection error.
    - Sends a liveness ping while connected; otherwise idle between frames.
    - Does not attempt to connect while no token is configured.

    ``execute_action(action, params)`` may be a plain function (run in a worker
    thread) or a coroutine function.
    """

    def __init__(
        self,
        url: str,
        *,
        token_provider: Callable[[], str | None],
        execute_action: Callable[[str, dict[str, Any]], Any],
        agent: str = "bridgemcp-agent",
        version: str = VERSION,
        retry_delay: float = RETRY_DELAY_S,
        ping_interval: float = PING_INTERVAL_S,
    ) -> None:
        self.url = url
        self._token_provider = token_provider
        self._execute_action = execute_action
        self.agent = agent
        self.version = version
        self.retry_delay = max(0.0, float(retry_delay))
        self.ping_interval = max(0.01, float(ping_interval))

        self._lock = threading.Lock()
        self._connected = threading.Event()
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop: asyncio.Event | None = None

        self._ws: Any | None = None
        self._tasks: set[asyncio.Task] = set()
        self._attempts = 0
        self._connections = 0
        self._last_error: str | None = None

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        t = threading.Thread(target=self._run_thread, name="bridge-peer-agent", daemon=True)
        self._thread = t
        t.start()

    def stop(self, *, timeout: float = 2.0) -> None:
        loop = self._loop
        if loop is not None and loop.is_running():
            with contextlib.suppress(RuntimeError):
                asyncio.run_coroutine_threadsafe(self._request_stop(), loop).result(timeout=timeout)
        t = self._thread
        if t is not None:
            t.join(timeout=timeout)
        self._thread = None

    def wait_for_connection(self, *, timeout: float = 5.0) -> bool:
        return bool(self._connected.wait(timeout=max(0.0, float(timeout))))

    def is_connected(self) -> bool:
        return self._connected.is_set()

    def status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "connected": self._connected.is_set(),
                "attempts": self._attempts,
                "connections": self._connections,
                **({"lastError": self._last_error} if self._last_error else {}),
            }

    # ─────────────────────────────────────────────────────────────────────────
    # Connection loop
    # ─────────────────────────────────────────────────────────────────────────

    def _run_thread(self) -> None:
        asyncio.run(self.run())

    async def run(self) -> None:
        websockets = _import_websockets()
        self._loop = asyncio.get_running_loop()
        self._stop = asyncio.Event()

        while not self._stop.is_set():
            token = (self._token_provider() or "").strip()
            if not token:
                logger.info("no auth token configured; not connecting")
                await self._sleep(self.retry_delay)
                continue

            with self._lock:
                self._attempts += 1
            try:
                async with websockets.connect(with_token(self.url, token), ping_interval=None, open_timeout=5) as ws:
                    await self._session(ws)
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as exc:
                with self._lock:
                    self._last_error = str(exc) or type(exc).__name__
                logger.info("relay connection failed: %s", self._last_error)
            finally:
                with self._lock:
                    self._ws = None
                self._connected.clear()

            if not self._stop.is_set():
                await self._sleep(self.retry_delay)

        for task in list(self._tasks):
            task.cancel()

    async def _session(self, ws) -> None:  # type: ignore[no-untyped-def]
        with self._lock:
            self._ws = ws
            self._connections += 1
            self._last_error = None
        self._connected.set()
        logger.info("connected to relay")

        await ws.send(json.dumps({"type": "connect", "agent": self.agent, "version": self.version}))
        keepalive = asyncio.create_task(self._keepalive(ws))
        try:
            async for raw in ws:
                self._on_frame(ws, raw)
        finally:
            keepalive.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await keepalive
            logger.info("disconnected from relay")

    async def _keepalive(self, ws) -> None:  # type: ignore[no-untyped-def]
        while True:
            await asyncio.sleep(self.ping_interval)
            await ws.send(json.dumps({"type": "ping"}))

    async def _sleep(self, seconds: float) -> None:
        assert self._stop is not None
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)

    async def _request_stop(self) -> None:
        if self._stop is not None:
            self._stop.set()
        with self._lock:
            ws = self._ws
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()

    # ─────────────────────────────────────────────────────────────────────────
    # Actions
    # ─────────────────────────────────────────────────────────────────────────

    def _on_frame(self, ws, raw: str | bytes) -> None:  # type: ignore[no-untyped-def]
        try:
            msg = json.loads(raw)
        except ValueError as exc:
            logger.warning("relay frame parse error: %s", exc)
            return
        if not isinstance(msg, dict) or not isinstance(msg.get("action"), str):
            return
        task = asyncio.create_task(self._execute(ws, msg))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _execute(self, ws, msg: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        websockets = _import_websockets()
        call_id = msg.get("id")
        action = str(msg.get("action"))
        params = msg.get("params") if isinstance(msg.get("params"), dict) else {}
        try:
            data = await self.run_action(action, params)
            reply: dict[str, Any] = {"type": "response", "id": call_id, "success": True, "data": data}
        except Exception as exc:  # noqa: BLE001
            logger.info("action %s failed: %s", action, exc)
            reply = {"type": "response", "id": call_id, "success": False, "error": str(exc) or type(exc).__name__}
        try:
            await ws.send(json.dumps(reply, ensure_ascii=False, default=str))
        except websockets.exceptions.ConnectionClosed:
            logger.info("reply for %s dropped: connection closed", action)

    async def run_action(self, action: str, params: dict[str, Any]) -> Any:
        if action == "ping":
            return {"pong": True, "timestamp": _now_ms()}
        check_action_urls(action, params)
        if inspect.iscoroutinefunction(self._execute_action):
            return await self._execute_action(action, params)
        result = await asyncio.to_thread(self._execute_action, action, params)
        if inspect.isawaitable(result):
            return await result
        return result
