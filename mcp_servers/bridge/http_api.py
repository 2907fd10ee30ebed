"""REST-style HTTP adapter.

Routes map to peer actions (see ``server/routes.py``). Every request passes the
security gate (rate limit, then token) before a route handler runs; only
``GET /status`` is public.

The browser agent attaches on the same port with a WebSocket upgrade of
``GET /?token=...`` (see ``gateway.serve_peer_socket``).
"""

from __future__ import annotations

import asyncio
import json
import logging
from http import HTTPStatus
from typing import Any

from aiohttp import web

from .config import VERSION, BridgeConfig
from .errors import (
    BadRequest,
    BridgeError,
    Forbidden,
    NotFound,
    PayloadTooLarge,
    RateLimited,
    Unauthenticated,
)
from .gateway import is_peer_upgrade, serve_peer_socket
from .registry import ConnectionRegistry
from .security import SecurityGate, strip_token
from .server import routes
from .server.redaction import redact_params, redact_url

logger = logging.getLogger("mcp.bridge.http")

REGISTRY_KEY = web.AppKey("registry", ConnectionRegistry)
GATE_KEY = web.AppKey("gate", SecurityGate)
CONFIG_KEY = web.AppKey("config", BridgeConfig)

_STATUS_BY_ERROR: list[tuple[type[BridgeError], int]] = [
    (Unauthenticated, HTTPStatus.UNAUTHORIZED),
    (Forbidden, HTTPStatus.FORBIDDEN),
    (RateLimited, HTTPStatus.TOO_MANY_REQUESTS),
    (PayloadTooLarge, HTTPStatus.REQUEST_ENTITY_TOO_LARGE),
    (BadRequest, HTTPStatus.BAD_REQUEST),
    (NotFound, HTTPStatus.NOT_FOUND),
]


def _error_response(err: BridgeError) -> web.Response:
    status = HTTPStatus.INTERNAL_SERVER_ERROR
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(err, cls):
            status = code
            break

    # Client-side errors describe the client's own request; everything that ends
    # in a 500 gets the fixed per-kind message only.
    public = status == HTTPStatus.INTERNAL_SERVER_ERROR
    payload: dict[str, Any] = {"error": err.to_dict(public=public)}
    headers: dict[str, str] = {}
    if isinstance(err, NotFound):
        payload["availableRoutes"] = routes.available_routes()
    if isinstance(err, RateLimited):
        headers["Retry-After"] = str(max(1, int(err.retry_after + 0.999)))
    return web.json_response(payload, status=int(status), headers=headers)


# ─────────────────────────────────────────────────────────────────────────────
# Middlewares (outermost first)
# ─────────────────────────────────────────────────────────────────────────────


@web.middleware
async def cors_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Answer preflights and allow only the browser-extension origin."""
    if request.method == "OPTIONS":
        response: web.StreamResponse = web.Response(status=HTTPStatus.NO_CONTENT)
    else:
        response = await handler(request)

    origin = request.headers.get("Origin")
    # an upgraded peer socket has already sent its headers
    if origin and not response.prepared and request.app[GATE_KEY].origin_allowed(origin):
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
        response.headers["Vary"] = "Origin"
    return response


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        response = await handler(request)
    except BridgeError as exc:
        logger.info("%s %s -> %s: %s", request.method, request.path, exc.kind, exc)
        return _error_response(exc)
    except web.HTTPException:
        raise
    except Exception:
        logger.exception("unhandled error for %s %s", request.method, request.path)
        return web.json_response(
            {"error": {"kind": "Internal", "message": "Internal server error"}},
            status=HTTPStatus.INTERNAL_SERVER_ERROR,
        )
    logger.debug("%s %s -> %s", request.method, redact_url(str(request.rel_url)), response.status)
    return response


@web.middleware
async def rate_limit_middleware(request: web.Request, handler) -> web.StreamResponse:
    request.app[GATE_KEY].check_rate(request.remote)
    return await handler(request)


@web.middleware
async def auth_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Bearer header or ``?token=`` query; the status route is always public.

    Peer upgrades carry their token in the query and are checked by the upgrade
    handler together with the origin.
    """
    if routes.route_key(request.method, request.path) not in routes.PUBLIC_ROUTES and not is_peer_upgrade(request):
        request.app[GATE_KEY].authenticate(request.headers, request.query)
    return await handler(request)


# ─────────────────────────────────────────────────────────────────────────────
# Handlers
# ─────────────────────────────────────────────────────────────────────────────


async def _collect_params(request: web.Request) -> dict[str, Any]:
    """Query string merged with the JSON body (body wins), token removed."""
    params: dict[str, Any] = {k: request.query[k] for k in request.query}

    if request.body_exists:
        raw = await request.app[GATE_KEY].read_body(request.content, declared_length=request.content_length)
        if raw.strip():
            try:
                body = json.loads(raw)
            except ValueError as exc:
                raise BadRequest("Request body is not valid JSON") from exc
            if not isinstance(body, dict):
                raise BadRequest("Request body must be a JSON object")
            params.update(body)

    return routes.coerce_numeric(strip_token(params))


async def handle_route(request: web.Request) -> web.StreamResponse:
    if is_peer_upgrade(request):
        return await serve_peer_socket(request, request.app[REGISTRY_KEY], request.app[GATE_KEY])

    method = request.method.upper()
    action = routes.resolve(method, request.path)
    if action is None:
        raise NotFound(f"No route for {method} {request.path}")

    params = await _collect_params(request)
    registry = request.app[REGISTRY_KEY]
    config = request.app[CONFIG_KEY]
    key = routes.route_key(method, request.path)

    if key == routes.STATUS_ROUTE:
        st = registry.status()
        return web.json_response({"connected": st["connected"], "version": VERSION, "peer": st["peer"]})

    if key == routes.WAIT_ROUTE:
        seconds = config.clamp_wait(params.get("time"))
        await asyncio.sleep(seconds)
        return web.json_response({"waited": seconds})

    logger.info("http action=%s params=%s", action, redact_params(params))
    result = await registry.call(action, params)
    return web.json_response(result if result is not None else {})


def create_app(registry: ConnectionRegistry, gate: SecurityGate, config: BridgeConfig | None = None) -> web.Application:
    cfg = config or gate.config
    app = web.Application(
        middlewares=[cors_middleware, error_middleware, rate_limit_middleware, auth_middleware],
        client_max_size=cfg.max_body_bytes,
    )
    app[REGISTRY_KEY] = registry
    app[GATE_KEY] = gate
    app[CONFIG_KEY] = cfg
    app.router.add_route("*", "/{tail:.*}", handle_route)
    return app
