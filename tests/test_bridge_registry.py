from __future__ import annotations

import asyncio
import json
import threading
from typing import Any

import pytest


class _FakeTransport:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))


class _BrokenTransport:
    async def send(self, message: str) -> None:
        raise ConnectionResetError("socket gone")


def _reply(call_id: str, data: Any = None, *, success: bool = True, error: Any = None) -> str:
    msg: dict[str, Any] = {"type": "response", "id": call_id, "success": success}
    if success:
        msg["data"] = data
    else:
        msg["error"] = error
    return json.dumps(msg)


async def _until(predicate, timeout: float = 1.0) -> None:  # type: ignore[no-untyped-def]
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0)


def test_call_without_peer_fails_fast() -> None:
    from mcp_servers.bridge.errors import PeerUnavailable
    from mcp_servers.bridge.registry import ConnectionRegistry

    reg = ConnectionRegistry()

    async def _main() -> None:
        with pytest.raises(PeerUnavailable):
            await reg.call("getTabs", {})

    asyncio.run(_main())
    assert reg.pending_count() == 0


def test_replies_are_matched_by_id_not_order() -> None:
    from mcp_servers.bridge.registry import ConnectionRegistry

    reg = ConnectionRegistry()
    t = _FakeTransport()
    assert reg.attach(t) is True

    async def _main() -> None:
        a = asyncio.create_task(reg.call("getTabs", {}))
        b = asyncio.create_task(reg.call("getActiveTab", {"tabId": 3}))
        await _until(lambda: len(t.sent) == 2)

        ids = {m["action"]: m["id"] for m in t.sent}
        assert ids["getTabs"] != ids["getActiveTab"]
        assert [m["params"] for m in t.sent if m["action"] == "getActiveTab"] == [{"tabId": 3}]

        reg.handle_frame(_reply(ids["getActiveTab"], {"id": 3}))
        reg.handle_frame(_reply(ids["getTabs"], [{"id": 1}, {"id": 3}]))

        assert await a == [{"id": 1}, {"id": 3}]
        assert await b == {"id": 3}

    asyncio.run(_main())
    assert reg.pending_count() == 0


def test_pending_table_capacity_rejects_overflow() -> None:
    from mcp_servers.bridge.errors import Overloaded, PeerDisconnected
    from mcp_servers.bridge.registry import ConnectionRegistry

    reg = ConnectionRegistry(max_pending=3)
    t = _FakeTransport()
    reg.attach(t)

    async def _main() -> None:
        tasks = [asyncio.create_task(reg.call("snapshot", {})) for _ in range(3)]
        await _until(lambda: reg.pending_count() == 3)

        with pytest.raises(Overloaded):
            await reg.call("snapshot", {})
        # the rejected call never reached the peer
        assert len(t.sent) == 3

        reg.detach(t)
        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, PeerDisconnected) for r in results)

    asyncio.run(_main())


def test_disconnect_rejects_every_pending_call() -> None:
    from mcp_servers.bridge.errors import PeerDisconnected
    from mcp_servers.bridge.registry import ConnectionRegistry

    reg = ConnectionRegistry()
    t = _FakeTransport()
    reg.attach(t)

    async def _main() -> None:
        tasks = [asyncio.create_task(reg.call("readPage", {"i": i})) for i in range(5)]
        await _until(lambda: len(t.sent) == 5)

        assert reg.detach(t) == 5
        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, PeerDisconnected) for r in results)

    asyncio.run(_main())
    assert reg.pending_count() == 0
    assert reg.is_connected() is False
    assert reg.status()["peer"] is None


def test_timeout_then_late_reply_is_dropped() -> None:
    from mcp_servers.bridge.errors import CallTimeout
    from mcp_servers.bridge.registry import ConnectionRegistry

    reg = ConnectionRegistry(call_timeout=30)
    t = _FakeTransport()
    reg.attach(t)

    async def _main() -> None:
        with pytest.raises(CallTimeout) as ei:
            await reg.call("screenshot", {}, timeout=0.05)
        assert ei.value.kind == "Timeout"
        assert "screenshot" in str(ei.value)

        # late reply for the expired id: ignored, nothing raised
        reg.handle_frame(_reply(t.sent[0]["id"], {"screenshot": "late"}))

    asyncio.run(_main())
    assert reg.pending_count() == 0


def test_failed_reply_becomes_action_failed() -> None:
    from mcp_servers.bridge.errors import ActionFailed
    from mcp_servers.bridge.registry import ConnectionRegistry

    reg = ConnectionRegistry()
    t = _FakeTransport()
    reg.attach(t)

    async def _main() -> None:
        first = asyncio.create_task(reg.call("click", {"selector": "#missing"}))
        second = asyncio.create_task(reg.call("click", {"selector": "#gone"}))
        await _until(lambda: len(t.sent) == 2)

        reg.handle_frame(_reply(t.sent[0]["id"], success=False, error="Element not found: #missing"))
        reg.handle_frame(_reply(t.sent[1]["id"], success=False, error={"message": "Tab closed"}))

        with pytest.raises(ActionFailed, match="Element not found"):
            await first
        with pytest.raises(ActionFailed, match="Tab closed"):
            await second

    asyncio.run(_main())


def test_send_failure_settles_call_as_disconnected() -> None:
    from mcp_servers.bridge.errors import PeerDisconnected
    from mcp_servers.bridge.registry import ConnectionRegistry

    reg = ConnectionRegistry()
    reg.attach(_BrokenTransport())

    async def _main() -> None:
        with pytest.raises(PeerDisconnected):
            await reg.call("getTabs", {})

    asyncio.run(_main())
    assert reg.pending_count() == 0


def test_second_peer_is_refused_and_stale_detach_is_ignored() -> None:
    from mcp_servers.bridge.registry import ConnectionRegistry

    reg = ConnectionRegistry()
    first, second = _FakeTransport(), _FakeTransport()

    assert reg.attach(first) is True
    assert reg.attach(second) is False
    assert reg.current_transport() is first

    # close callback of the refused transport must not clear the slot
    assert reg.detach(second) == 0
    assert reg.is_connected() is True

    reg.detach(first)
    assert reg.attach(second) is True


def test_malformed_and_unknown_frames_are_dropped() -> None:
    from mcp_servers.bridge.registry import ConnectionRegistry

    reg = ConnectionRegistry()
    t = _FakeTransport()
    reg.attach(t)

    reg.handle_frame("not json")
    reg.handle_frame(b"\xff\xfe")
    reg.handle_frame("[1, 2, 3]")
    reg.handle_frame(json.dumps({"type": "ping"}))
    reg.handle_frame(json.dumps({"type": "telemetry", "x": 1}))
    reg.handle_frame(json.dumps({"type": "response", "id": True, "success": True}))
    reg.handle_frame(_reply("never-issued", {}))

    assert reg.is_connected() is True
    assert any("parse error" in entry["message"] for entry in reg.recent_logs())

    async def _main() -> None:
        task = asyncio.create_task(reg.call("getTabs", {}))
        await _until(lambda: len(t.sent) == 1)
        reg.handle_frame(_reply(t.sent[0]["id"], []))
        assert await task == []

    asyncio.run(_main())


def test_connect_frame_is_reported_in_status() -> None:
    from mcp_servers.bridge.registry import ConnectionRegistry

    reg = ConnectionRegistry(max_pending=7)
    assert reg.status() == {"connected": False, "pending": 0, "capacity": 7, "peer": None}

    reg.attach(_FakeTransport())
    reg.handle_frame(json.dumps({"type": "connect", "agent": "test-agent", "version": "2.1.0"}))

    st = reg.status()
    assert st["connected"] is True
    assert st["peer"]["agent"] == "test-agent"
    assert st["peer"]["version"] == "2.1.0"
    assert st["peer"]["connectedAtMs"] > 0


def test_submit_from_another_thread() -> None:
    from mcp_servers.bridge.errors import PeerUnavailable
    from mcp_servers.bridge.registry import ConnectionRegistry

    reg = ConnectionRegistry()
    with pytest.raises(PeerUnavailable):
        reg.submit("getTabs", {})

    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    reg.bind_loop(loop)

    class _EchoTransport:
        async def send(self, message: str) -> None:
            msg = json.loads(message)
            loop.call_soon(reg.handle_frame, _reply(msg["id"], {"action": msg["action"], "params": msg["params"]}))

    try:
        with pytest.raises(PeerUnavailable):
            reg.submit("getTabs", {})

        reg.attach(_EchoTransport())
        assert reg.submit("closeTab", {"tabId": 9}) == {"action": "closeTab", "params": {"tabId": 9}}
    finally:
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout=2.0)
        loop.close()


def test_refused_second_peer_leaves_pending_calls_alone() -> None:
    from mcp_servers.bridge.registry import ConnectionRegistry

    reg = ConnectionRegistry()
    first, second = _FakeTransport(), _FakeTransport()
    reg.attach(first)

    async def _main() -> None:
        task = asyncio.create_task(reg.call("readPage", {"tabId": 1}))
        await _until(lambda: len(first.sent) == 1)

        assert reg.attach(second) is False
        assert reg.detach(second) == 0
        assert reg.pending_count() == 1
        assert not task.done()
        assert second.sent == []

        reg.handle_frame(_reply(first.sent[0]["id"], {"text": "hello"}))
        assert await task == {"text": "hello"}

    asyncio.run(_main())
    assert reg.pending_count() == 0


def test_success_flag_must_be_true() -> None:
    from mcp_servers.bridge.errors import ActionFailed
    from mcp_servers.bridge.registry import ConnectionRegistry

    reg = ConnectionRegistry()
    t = _FakeTransport()
    reg.attach(t)

    async def _main() -> None:
        tasks = [asyncio.create_task(reg.call("click", {"i": i})) for i in range(3)]
        await _until(lambda: len(t.sent) == 3)

        reg.handle_frame(json.dumps({"type": "response", "id": t.sent[0]["id"], "success": "false", "error": "nope"}))
        reg.handle_frame(json.dumps({"type": "response", "id": t.sent[1]["id"], "success": 1, "data": {}}))
        reg.handle_frame(json.dumps({"type": "response", "id": t.sent[2]["id"], "data": {"clicked": True}}))

        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, ActionFailed) for r in results)
        assert "nope" in str(results[0])

    asyncio.run(_main())
