"""HTTP route table: ``(method, path)`` → peer action."""

from __future__ import annotations

from typing import Any

from ..errors import BadRequest

STATUS_ROUTE = ("GET", "/status")
WAIT_ROUTE = ("POST", "/wait")

# Handled locally rather than forwarded to the peer.
LOCAL_ROUTES = frozenset({STATUS_ROUTE, WAIT_ROUTE})
PUBLIC_ROUTES = frozenset({STATUS_ROUTE})

# WebSocket upgrade for the browser agent; gated by the upgrade check, not by route auth.
PEER_ROUTE = ("GET", "/")

HTTP_ROUTES: dict[tuple[str, str], str] = {
    # read-only queries
    ("GET", "/tabs"): "getTabs",
    ("GET", "/active"): "getActiveTab",
    ("GET", "/groups"): "listGroups",
    ("GET", "/console"): "getConsoleLogs",
    # navigation / tabs
    ("POST", "/navigate"): "navigate",
    ("POST", "/back"): "goBack",
    ("POST", "/forward"): "goForward",
    ("POST", "/newtab"): "newTab",
    ("POST", "/close"): "closeTab",
    ("POST", "/focus"): "focusTab",
    # interaction
    ("POST", "/click"): "click",
    ("POST", "/type"): "type",
    ("POST", "/hover"): "hover",
    ("POST", "/drag"): "dragDrop",
    ("POST", "/key"): "pressKey",
    ("POST", "/select"): "selectOption",
    ("POST", "/input"): "setInputValue",
    # inspection
    ("POST", "/read"): "readPage",
    ("POST", "/snapshot"): "snapshot",
    ("POST", "/screenshot"): "screenshot",
    ("POST", "/execute"): "executeScript",
    # tab groups
    ("POST", "/group"): "createGroup",
    ("POST", "/group/add"): "addToGroup",
    ("POST", "/opengroup"): "openUrlsInGroup",
    ("POST", "/ungroup"): "ungroupTabs",
    ("POST", "/group/collapse"): "collapseGroup",
}

NUMERIC_FIELDS = frozenset({"tabId", "x", "y", "time", "groupId"})


def available_routes() -> list[str]:
    keys = sorted(set(HTTP_ROUTES) | LOCAL_ROUTES, key=lambda k: (k[1], k[0]))
    return [f"{method} {path}" for method, path in keys]


def normalize_path(path: str) -> str:
    return path.rstrip("/") or "/"


def route_key(method: str, path: str) -> tuple[str, str]:
    return (method.upper(), normalize_path(path))


def resolve(method: str, path: str) -> str | None:
    """Return the peer action for a route, ``""`` for local routes, None if unmapped."""
    key = route_key(method, path)
    if key in LOCAL_ROUTES:
        return ""
    return HTTP_ROUTES.get(key)


def _to_number(value: str) -> int | float:
    text = value.strip()
    try:
        return int(text)
    except ValueError:
        pass
    number = float(text)
    if number != number or number in (float("inf"), float("-inf")):
        raise ValueError(text)
    return number


def coerce_numeric(params: dict[str, Any]) -> dict[str, Any]:
    """Convert known numeric fields given as text (query strings) to numbers."""
    out = dict(params)
    for key in NUMERIC_FIELDS:
        value = out.get(key)
        if not isinstance(value, str):
            continue
        if not value.strip():
            out.pop(key)
            continue
        try:
            out[key] = _to_number(value)
        except ValueError as exc:
            raise BadRequest(f"{key} must be a number") from exc
    return out
