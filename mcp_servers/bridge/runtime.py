from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from typing import Any

from aiohttp import web

from .config import VERSION, BridgeConfig
from .gateway import PeerGateway
from .http_api import create_app
from .registry import ConnectionRegistry
from .security import SecurityGate
from .token_store import ensure_token

logger = logging.getLogger("mcp.bridge.runtime")


class BridgeRuntime:
    """Process-wide bridge state behind one object.

    Owns the token, the security gate, the connection registry and a dedicated
    asyncio loop thread hosting the HTTP adapter (which also accepts the peer
    upgrade) and, when ``peer_port`` is configured, a dedicated peer gateway.
    The stdio adapter talks to ``registry.submit()`` from the main thread.
    """

    def __init__(self, config: BridgeConfig | None = None, *, persist_token: bool = True) -> None:
        self.config = config or BridgeConfig.from_env()
        if persist_token:
            ensure_token(self.config)
        elif not self.config.token:
            raise ValueError("BridgeRuntime needs a token when persist_token=False")
        self.token: str = str(self.config.token)

        self.gate = SecurityGate(self.token, self.config)
        self.registry = ConnectionRegistry(call_timeout=self.config.call_timeout, max_pending=self.config.max_pending)
        self.gateway: PeerGateway | None = None
        if self.config.peer_port is not None:
            self.gateway = PeerGateway(self.registry, self.gate, host=self.config.host, port=self.config.peer_port)

        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._ready = threading.Event()
        self._stop: asyncio.Event | None = None
        self._runner: web.AppRunner | None = None
        self._http_port: int | None = None
        self._start_error: BaseException | None = None
        self._serve_http = True

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self, *, wait_timeout: float = 5.0, serve_http: bool = True) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._serve_http = serve_http
        self._ready.clear()
        self._start_error = None

        t = threading.Thread(target=self._run_thread, name="bridge-runtime", daemon=True)
        self._thread = t
        t.start()

        if not self._ready.wait(timeout=max(0.05, float(wait_timeout))):
            raise RuntimeError(f"Bridge runtime failed to start within {wait_timeout}s")
        if self._start_error is not None:
            raise RuntimeError(f"Bridge runtime failed to start: {self._start_error}") from self._start_error

    def stop(self, *, timeout: float = 5.0) -> None:
        loop = self._loop
        stop = self._stop
        if loop is not None and stop is not None and loop.is_running():
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(stop.set)
        t = self._thread
        if t is not None:
            t.join(timeout=timeout)
        self._thread = None

    @property
    def http_port(self) -> int | None:
        return self._http_port

    @property
    def peer_port(self) -> int | None:
        """Port the browser agent dials: the dedicated gateway, else the HTTP port."""
        if self.gateway is not None:
            return self.gateway.port
        return self._http_port

    def status(self) -> dict[str, Any]:
        st = self.registry.status()
        return {
            "version": VERSION,
            "host": self.config.host,
            **({"httpPort": self._http_port} if self._http_port is not None else {}),
            **({"peerPort": self.peer_port} if self.peer_port is not None else {}),
            "listening": self._runner is not None or (self.gateway is not None and self.gateway.listening),
            **st,
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Loop thread
    # ─────────────────────────────────────────────────────────────────────────

    def _run_thread(self) -> None:
        asyncio.run(self._run_async())

    async def _run_async(self) -> None:
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._stop = asyncio.Event()
        self.registry.bind_loop(loop)

        try:
            if self.gateway is not None:
                await self.gateway.start()
            if self._serve_http:
                await self._start_http()
        except Exception as exc:  # noqa: BLE001
            logger.error("bridge startup failed: %s", exc)
            self._start_error = exc
            await self._shutdown_async()
            self._ready.set()
            return

        started = time.time()
        logger.info(
            "bridge v%s ready http=%s peer=ws://%s:%s",
            VERSION,
            f"http://{self.config.host}:{self._http_port}" if self._http_port else "off",
            self.config.host,
            self.peer_port,
        )
        self._ready.set()
        try:
            await self._stop.wait()
        finally:
            logger.info("bridge shutting down after %.1fs", time.time() - started)
            await self._shutdown_async()

    async def _start_http(self) -> None:
        app = create_app(self.registry, self.gate, self.config)
        # Access logs would include ?token= query strings; the adapter logs redacted lines itself.
        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.config.host, self.config.http_port)
        await site.start()
        self._runner = runner
        addresses = list(runner.addresses or [])
        self._http_port = int(addresses[0][1]) if addresses else int(self.config.http_port)
        logger.info("http adapter listening on http://%s:%s", self.config.host, self._http_port)

    async def _shutdown_async(self) -> None:
        # Close the peer first: an open peer socket keeps its HTTP handler alive.
        transport = self.registry.current_transport()
        if transport is not None:
            with contextlib.suppress(Exception):
                await transport.close()  # type: ignore[attr-defined]
        runner = self._runner
        self._runner = None
        if runner is not None:
            with contextlib.suppress(Exception):
                await runner.cleanup()
        if self.gateway is not None:
            await self.gateway.stop()
