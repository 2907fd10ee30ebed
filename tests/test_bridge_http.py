from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import json
import time
import urllib.error
import urllib.request
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

TOKEN = "f" * 64
EXT_ORIGIN = "chrome-extension://" + "abcdefghijklmnop" * 2


def _request(
    port: int,
    method: str,
    path: str,
    *,
    body: Any = None,
    raw: bytes | None = None,
    headers: dict[str, str] | None = None,
    token: str | None = TOKEN,
) -> tuple[int, dict[str, str], Any]:
    hdrs = dict(headers or {})
    if token:
        hdrs["Authorization"] = f"Bearer {token}"
    data = raw
    if body is not None:
        data = json.dumps(body).encode("utf-8")
        hdrs["Content-Type"] = "application/json"
    req = urllib.request.Request(f"http://127.0.0.1:{port}{path}", data=data, method=method, headers=hdrs)
    try:
        with urllib.request.urlopen(req, timeout=5) as resp:
            payload = resp.read()
            return resp.status, dict(resp.headers), json.loads(payload) if payload else None
    except urllib.error.HTTPError as exc:
        payload = exc.read()
        return exc.code, dict(exc.headers), json.loads(payload) if payload else None


def _echo_action(action: str, params: dict[str, Any]) -> Any:
    if action == "snapshot":
        time.sleep(1.0)
    if action == "getTabs":
        return [{"id": 1, "url": "https://example.com"}]
    return {"action": action, "params": params}


@contextlib.contextmanager
def _bridge(
    tmp_path: Path, *, with_agent: bool = True, execute_action: Any = _echo_action, **overrides: Any
) -> Iterator[Any]:
    pytest.importorskip("websockets")
    pytest.importorskip("aiohttp")

    from mcp_servers.bridge.config import BridgeConfig
    from mcp_servers.bridge.peer_agent import PeerAgent
    from mcp_servers.bridge.runtime import BridgeRuntime

    cfg = BridgeConfig(http_port=0, token=TOKEN, token_path=str(tmp_path / "token"), **overrides)
    rt = BridgeRuntime(cfg, persist_token=False)
    rt.start()
    agent = None
    try:
        if with_agent:
            agent = PeerAgent(
                f"ws://127.0.0.1:{rt.http_port}",
                token_provider=lambda: TOKEN,
                execute_action=execute_action,
                agent="pytest-agent",
                retry_delay=0.05,
            )
            agent.start()
            assert rt.registry.wait_for_connection(timeout=5.0)
        yield rt
    finally:
        if agent is not None:
            agent.stop()
        rt.stop()


def test_http_routes_relay_to_peer(tmp_path: Path) -> None:
    with _bridge(tmp_path) as rt:
        port = rt.http_port

        status, _, body = _request(port, "POST", "/navigate", body={"url": "https://example.com", "tabId": "4"})
        assert status == 200
        assert body == {"action": "navigate", "params": {"url": "https://example.com", "tabId": 4}}

        status, _, body = _request(port, "GET", "/tabs")
        assert status == 200
        assert body == [{"id": 1, "url": "https://example.com"}]

        # query token is accepted and never forwarded; numeric query fields are coerced
        status, _, body = _request(port, "POST", f"/close?tabId=12&token={TOKEN}", token=None)
        assert status == 200
        assert body == {"action": "closeTab", "params": {"tabId": 12}}

        # body wins over query
        status, _, body = _request(port, "POST", "/focus?tabId=1", body={"tabId": 2})
        assert body["params"] == {"tabId": 2}


def test_http_auth_and_public_status(tmp_path: Path) -> None:
    seen: list[str] = []

    def _recording_action(action: str, params: dict[str, Any]) -> Any:
        seen.append(action)
        return _echo_action(action, params)

    with _bridge(tmp_path, execute_action=_recording_action) as rt:
        port = rt.http_port

        status, _, body = _request(port, "GET", "/tabs", token=None)
        assert status == 401
        assert body["error"]["kind"] == "Unauthenticated"

        status, _, body = _request(port, "POST", "/navigate", body={"url": "https://example.com"}, token=None)
        assert status == 401
        status, _, body = _request(port, "POST", "/navigate/", body={"url": "https://example.com"}, token="wrong")
        assert status == 401
        # rejected requests never reach the agent
        time.sleep(0.1)
        assert seen == []

        status, _, body = _request(port, "POST", "/navigate/", body={"url": "https://example.com"})
        assert status == 200
        assert seen == ["navigate"]

        # trailing slash still routes to the public status handler
        status, _, body = _request(port, "GET", "/status/", token=None)
        assert status == 200

        deadline = time.time() + 2.0
        while time.time() < deadline:
            status, _, body = _request(port, "GET", "/status", token=None)
            if (body.get("peer") or {}).get("agent"):
                break
            time.sleep(0.02)
        assert status == 200
        assert body["connected"] is True
        assert body["version"] == "1.0.0"
        assert body["peer"]["agent"] == "pytest-agent"


def test_peer_upgrades_on_the_http_port(tmp_path: Path) -> None:
    websockets = pytest.importorskip("websockets")

    from mcp_servers.bridge.gateway import PEER_SLOT_TAKEN_CLOSE_CODE

    with _bridge(tmp_path) as rt:
        assert rt.gateway is None
        assert rt.peer_port == rt.http_port
        base = f"ws://127.0.0.1:{rt.http_port}"

        async def _status_of(url: str, **kwargs: Any) -> int:
            try:
                async with websockets.connect(url, open_timeout=3, **kwargs):
                    return 101
            except websockets.exceptions.InvalidStatus as exc:
                return int(exc.response.status_code)

        async def _second_peer_close_code() -> int:
            async with websockets.connect(f"{base}/?token={TOKEN}", origin=EXT_ORIGIN, ping_interval=None) as second:
                with pytest.raises(websockets.exceptions.ConnectionClosed) as ei:
                    await asyncio.wait_for(second.recv(), timeout=3)
                return int(ei.value.rcvd.code)

        assert asyncio.run(_status_of(base + "/")) == 401
        assert asyncio.run(_status_of(base + "/?token=wrong")) == 401
        assert asyncio.run(_status_of(f"{base}/?token={TOKEN}", origin="https://evil.example")) == 403

        # the agent's slow action stays pending while another peer is refused
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            call = pool.submit(rt.registry.submit, "snapshot", {"tabId": 1})
            deadline = time.time() + 2.0
            while rt.registry.pending_count() == 0 and time.time() < deadline:
                time.sleep(0.01)
            assert rt.registry.pending_count() == 1

            assert asyncio.run(_second_peer_close_code()) == PEER_SLOT_TAKEN_CLOSE_CODE
            assert rt.registry.is_connected() is True

            assert call.result(timeout=5) == {"action": "snapshot", "params": {"tabId": 1}}
        assert rt.registry.pending_count() == 0


def test_http_unknown_route_lists_available_routes(tmp_path: Path) -> None:
    with _bridge(tmp_path, with_agent=False) as rt:
        status, _, body = _request(rt.http_port, "POST", "/teleport", body={})
        assert status == 404
        assert body["error"]["kind"] == "NotFound"
        assert "POST /navigate" in body["availableRoutes"]
        assert "GET /status" in body["availableRoutes"]

        # method matters
        status, _, _ = _request(rt.http_port, "GET", "/navigate")
        assert status == 404


def test_http_bad_requests(tmp_path: Path) -> None:
    with _bridge(tmp_path, with_agent=False, max_body_bytes=128) as rt:
        port = rt.http_port

        status, _, body = _request(port, "POST", "/navigate", raw=b"{not json", headers={"Content-Type": "application/json"})
        assert status == 400
        assert body["error"]["kind"] == "BadRequest"

        status, _, body = _request(port, "POST", "/navigate", body=[1, 2])
        assert status == 400

        status, _, body = _request(port, "POST", "/click", body={"x": "left"})
        assert status == 400
        assert "x" in body["error"]["message"]

        status, _, body = _request(port, "POST", "/execute", body={"script": "x" * 500})
        assert status == 413
        assert body["error"]["kind"] == "PayloadTooLarge"


def test_http_relay_errors_use_public_messages(tmp_path: Path) -> None:
    with _bridge(tmp_path, with_agent=False) as rt:
        status, _, body = _request(rt.http_port, "GET", "/tabs")
        assert status == 500
        assert body["error"] == {"kind": "PeerUnavailable", "message": "Browser agent is not connected"}

    with _bridge(tmp_path, call_timeout=0.2) as rt:
        status, _, body = _request(rt.http_port, "POST", "/snapshot", body={})
        assert status == 500
        assert body["error"] == {"kind": "Timeout", "message": "Browser agent did not reply in time"}
        assert rt.registry.pending_count() == 0

        status, _, body = _request(rt.http_port, "POST", "/navigate", body={"url": "javascript:alert(1)"})
        assert status == 500
        assert body["error"]["kind"] == "ActionFailed"
        assert "Blocked URL scheme" in body["error"]["message"]


def test_http_wait_is_local(tmp_path: Path) -> None:
    with _bridge(tmp_path, with_agent=False) as rt:
        status, _, body = _request(rt.http_port, "POST", "/wait", body={"time": 0})
        assert status == 200
        assert body == {"waited": 0.0}

        status, _, body = _request(rt.http_port, "POST", "/wait?time=-2")
        assert body == {"waited": 0.0}


def test_http_rate_limit(tmp_path: Path) -> None:
    with _bridge(tmp_path, with_agent=False, rate_limit=3) as rt:
        codes = [_request(rt.http_port, "GET", "/status", token=None)[0] for _ in range(3)]
        assert codes == [200, 200, 200]

        status, headers, body = _request(rt.http_port, "GET", "/status", token=None)
        assert status == 429
        assert body["error"]["kind"] == "RateLimited"
        assert int(headers["Retry-After"]) >= 1


def test_http_cors_preflight_only_for_extension_origin(tmp_path: Path) -> None:
    with _bridge(tmp_path, with_agent=False) as rt:
        status, headers, _ = _request(rt.http_port, "OPTIONS", "/navigate", headers={"Origin": EXT_ORIGIN}, token=None)
        assert status == 204
        assert headers.get("Access-Control-Allow-Origin") == EXT_ORIGIN

        status, headers, _ = _request(rt.http_port, "OPTIONS", "/navigate", headers={"Origin": "https://evil.example"}, token=None)
        assert status == 204
        assert "Access-Control-Allow-Origin" not in headers


def test_stdio_submit_shares_the_relay(tmp_path: Path) -> None:
    with _bridge(tmp_path) as rt:
        assert rt.registry.submit("getTabs", {}) == [{"id": 1, "url": "https://example.com"}]
        assert rt.registry.submit("ping", {})["pong"] is True
        st = rt.status()
        assert st["connected"] is True
        assert st["peerPort"] == rt.peer_port
        assert st["httpPort"] == rt.http_port
