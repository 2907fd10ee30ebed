from __future__ import annotations

import contextlib
import json
import logging
from typing import Any

from aiohttp import WSMsgType, web

from .errors import BridgeError, Forbidden, Unauthenticated
from .registry import ConnectionRegistry
from .security import SecurityGate
from .server import routes
from .server.redaction import redact_url

logger = logging.getLogger("mcp.bridge.gateway")

# Close code for a peer that arrives while another one holds the slot.
PEER_SLOT_TAKEN_CLOSE_CODE = 4409

MAX_FRAME_BYTES = 16 * 1024 * 1024


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "The peer gateway requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


def _http_error(status: int, reason: str, err: BridgeError) -> Any:
    from websockets.datastructures import Headers as WsHeaders  # type: ignore[import-not-found]
    from websockets.http11 import Response as WsResponse  # type: ignore[import-not-found]

    body = json.dumps({"error": err.to_dict(public=True)}, separators=(",", ":")).encode("utf-8")
    headers = WsHeaders()
    headers["Content-Type"] = "application/json"
    headers["Cache-Control"] = "no-store"
    return WsResponse(status, reason, headers, body)


class PeerGateway:
    """WebSocket listener through which the browser agent attaches to the registry.

    The upgrade is gated (origin + token) before the connection exists; admission
    to the single peer slot is decided by the registry.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        gate: SecurityGate,
        *,
        host: str = "127.0.0.1",
        port: int = 0,
    ) -> None:
        self.registry = registry
        self.gate = gate
        self.host = host
        self.port = int(port)
        self._server: Any | None = None

    async def start(self) -> None:
        websockets = _import_websockets()
        self._server = await websockets.serve(
            self._handler,
            self.host,
            self.port,
            process_request=self._process_request,
            max_size=MAX_FRAME_BYTES,
            ping_interval=20,
            ping_timeout=20,
        )
        sockets = list(getattr(self._server, "sockets", None) or [])
        if sockets:
            self.port = int(sockets[0].getsockname()[1])
        logger.info("peer gateway listening on ws://%s:%s", self.host, self.port)

    async def stop(self) -> None:
        srv = self._server
        self._server = None
        transport = self.registry.current_transport()
        if transport is not None:
            with contextlib.suppress(Exception):
                await transport.close()  # type: ignore[attr-defined]
        if srv is not None:
            srv.close()
            with contextlib.suppress(Exception):
                await srv.wait_closed()

    @property
    def listening(self) -> bool:
        return self._server is not None

    def _process_request(self, _conn, request):  # type: ignore[no-untyped-def]
        path = str(getattr(request, "path", "") or "")
        origin = request.headers.get("Origin")
        try:
            self.gate.validate_upgrade(origin, path)
        except Forbidden as exc:
            logger.warning("peer upgrade rejected: %s", exc)
            return _http_error(403, "Forbidden", exc)
        except Unauthenticated as exc:
            logger.warning("peer upgrade rejected: bad token path=%s", redact_url(path))
            return _http_error(401, "Unauthorized", exc)
        return None

    async def _handler(self, ws) -> None:  # type: ignore[no-untyped-def]
        websockets = _import_websockets()

        if not self.registry.attach(ws):
            logger.warning("second peer refused while one is connected")
            with contextlib.suppress(Exception):
                await ws.close(code=PEER_SLOT_TAKEN_CLOSE_CODE, reason="peer already connected")
            return

        try:
            async for raw in ws:
                self.registry.handle_frame(raw)
        except websockets.exceptions.ConnectionClosed as exc:
            logger.info("peer connection closed: %s", exc)
        finally:
            self.registry.detach(ws)


# ─────────────────────────────────────────────────────────────────────────────
# Peer upgrade on the HTTP port
# ─────────────────────────────────────────────────────────────────────────────


class AiohttpPeerTransport:
    """Registry transport over an aiohttp server-side WebSocket."""

    def __init__(self, ws: web.WebSocketResponse) -> None:
        self._ws = ws

    async def send(self, message: str) -> None:
        await self._ws.send_str(message)

    async def close(self, *, code: int = 1000, reason: str = "") -> None:
        await self._ws.close(code=code, message=reason.encode("utf-8"))


def is_peer_upgrade(request: web.Request) -> bool:
    return (
        routes.route_key(request.method, request.path) == routes.PEER_ROUTE
        and request.headers.get("Upgrade", "").lower() == "websocket"
    )


async def serve_peer_socket(
    request: web.Request, registry: ConnectionRegistry, gate: SecurityGate
) -> web.WebSocketResponse:
    """Admit the browser agent through an upgrade of ``GET /?token=...``.

    Same rules as ``PeerGateway``: origin and token are checked before the
    upgrade completes, a second peer is closed with 4409.
    """
    try:
        gate.validate_upgrade(request.headers.get("Origin"), request.path_qs)
    except Unauthenticated:
        logger.warning("peer upgrade rejected: bad token path=%s", redact_url(request.path_qs))
        raise
    except Forbidden as exc:
        logger.warning("peer upgrade rejected: %s", exc)
        raise

    ws = web.WebSocketResponse(max_msg_size=MAX_FRAME_BYTES, heartbeat=20.0)
    await ws.prepare(request)
    transport = AiohttpPeerTransport(ws)

    if not registry.attach(transport):
        logger.warning("second peer refused while one is connected")
        await transport.close(code=PEER_SLOT_TAKEN_CLOSE_CODE, reason="peer already connected")
        return ws

    try:
        async for msg in ws:
            if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                registry.handle_frame(msg.data)
            elif msg.type == WSMsgType.ERROR:
                logger.info("peer connection error: %s", ws.exception())
    finally:
        registry.detach(transport)
        logger.info("peer connection closed: code=%s", ws.close_code)
    return ws
