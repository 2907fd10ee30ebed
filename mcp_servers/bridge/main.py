"""
Browser bridge: MCP (stdio) and HTTP front-ends relaying to one browser agent.

This module provides the entry point and the stdio protocol handling. The relay
itself lives in registry.py; the HTTP adapter in http_api.py.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, BinaryIO

from .config import BridgeConfig
from .errors import BridgeError, NotFound
from .registry import ConnectionRegistry
from .server.contract import initialize_result, select_protocol, tools_list
from .server.definitions import SCREENSHOT_TOOL, TOOL_TO_ACTION, WAIT_TOOL
from .server.redaction import redact_params
from .server.types import ToolResult

logger = logging.getLogger("mcp.bridge")

__all__ = ["LineBuffer", "McpServer", "main"]

READ_CHUNK_SIZE = 64 * 1024
TOOL_ERROR_CODE = -32000
METHOD_NOT_FOUND_CODE = -32601
NOTIFICATIONS = frozenset({"notifications/initialized", "notifications/cancelled"})

_write_lock = threading.Lock()


def _write_message(payload: dict[str, Any]) -> None:
    """Write one JSON-RPC message to stdout as a single line."""
    line = (json.dumps(payload, ensure_ascii=False) + "\n").encode()
    with _write_lock:
        sys.stdout.buffer.write(line)
        sys.stdout.buffer.flush()


def _is_wait(message: dict[str, Any]) -> bool:
    params = message.get("params")
    return isinstance(params, dict) and params.get("name") == WAIT_TOOL


class LineBuffer:
    """Split a byte stream into lines, carrying incomplete fragments across reads."""

    def __init__(self) -> None:
        self._pending = b""

    def feed(self, chunk: bytes) -> list[str]:
        data = self._pending + chunk
        *complete, self._pending = data.split(b"\n")
        return [text for raw in complete if (text := self._decode(raw))]

    def flush(self) -> str | None:
        """Return the trailing fragment at end of stream, if any."""
        raw, self._pending = self._pending, b""
        return self._decode(raw) or None

    @staticmethod
    def _decode(raw: bytes) -> str:
        return raw.decode("utf-8", errors="replace").strip()


class McpServer:
    """Stdio adapter: JSON-RPC requests in, one reply line per request out."""

    def __init__(self, registry: ConnectionRegistry, config: BridgeConfig | None = None, *, max_workers: int | None = None):
        self.registry = registry
        self.config = config or BridgeConfig()
        # One worker per call the relay can hold outstanding.
        workers = max_workers if max_workers is not None else self.config.max_pending
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(workers)), thread_name_prefix="mcp-call")
        # Waits sleep on timers, not on workers.
        self._timers: set[threading.Timer] = set()
        self._timers_lock = threading.Lock()

    # ─────────────────────────────────────────────────────────────────────────
    # Handlers
    # ─────────────────────────────────────────────────────────────────────────

    def handle_initialize(self, request_id: Any, params: dict[str, Any] | None = None) -> None:
        requested = params.get("protocolVersion") if isinstance(params, dict) else None
        _write_message({"jsonrpc": "2.0", "id": request_id, "result": initialize_result(select_protocol(requested))})

    def handle_list_tools(self, request_id: Any) -> None:
        _write_message({"jsonrpc": "2.0", "id": request_id, "result": {"tools": tools_list()}})

    def handle_wait(self, request_id: Any, arguments: dict[str, Any]) -> None:
        """Reply to ``browser_wait`` once the clamped delay elapses. Returns at once."""
        seconds = self.config.clamp_wait(arguments.get("time"))

        def _done() -> None:
            with self._timers_lock:
                self._timers.discard(timer)
            result = ToolResult.json({"waited": seconds})
            _write_message({"jsonrpc": "2.0", "id": request_id, "result": {"content": result.to_content_list()}})

        timer = threading.Timer(seconds, _done)
        timer.daemon = True
        with self._timers_lock:
            self._timers.add(timer)
        timer.start()

    def drain(self, timeout: float | None = None) -> None:
        """Block until every scheduled wait has replied."""
        with self._timers_lock:
            timers = list(self._timers)
        for timer in timers:
            timer.join(timeout)

    def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Run one relayed tool. Raises BridgeError for unknown tools and relay/action failures."""
        action = TOOL_TO_ACTION.get(name)
        if action is None:
            raise NotFound(f"Unknown tool: {name}")

        data = self.registry.submit(action, arguments)
        if name == SCREENSHOT_TOOL:
            return ToolResult.screenshot(data)
        return ToolResult.json(data)

    def handle_call_tool(self, request_id: Any, name: str, arguments: dict[str, Any]) -> None:
        logger.info("tool=%s args=%s", name, redact_params(arguments))
        if name == WAIT_TOOL:
            self.handle_wait(request_id, arguments)
            return
        try:
            result = self.call_tool(name, arguments)
        except BridgeError as exc:
            logger.info("tool_error tool=%s kind=%s reason=%s", name, exc.kind, exc)
            error = {"code": TOOL_ERROR_CODE, "message": str(exc), "data": {"kind": exc.kind}}
            _write_message({"jsonrpc": "2.0", "id": request_id, "error": error})
            return
        except Exception:
            logger.exception("tool_call_failed tool=%s", name)
            error = {"code": TOOL_ERROR_CODE, "message": "Internal error", "data": {"kind": "Internal"}}
            _write_message({"jsonrpc": "2.0", "id": request_id, "error": error})
            return

        _write_message({"jsonrpc": "2.0", "id": request_id, "result": {"content": result.to_content_list()}})

    def dispatch(self, message: dict[str, Any]) -> None:
        """Dispatch one JSON-RPC message to its handler."""
        if not message:
            return

        method = message.get("method")
        request_id = message.get("id")
        params = message.get("params") or {}
        if not isinstance(params, dict):
            params = {}

        if method == "initialize":
            self.handle_initialize(request_id, params)
        elif method in NOTIFICATIONS:
            return
        elif method == "tools/list":
            self.handle_list_tools(request_id)
        elif method == "tools/call":
            name = params.get("name")
            arguments = params.get("arguments")
            self.handle_call_tool(request_id, name if isinstance(name, str) else "", arguments if isinstance(arguments, dict) else {})
        elif method == "ping":
            _write_message({"jsonrpc": "2.0", "id": request_id, "result": {}})
        else:
            _write_message(
                {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "error": {"code": METHOD_NOT_FOUND_CODE, "message": f"Method not found: {method}"},
                }
            )

    # ─────────────────────────────────────────────────────────────────────────
    # Stream loop
    # ─────────────────────────────────────────────────────────────────────────

    def serve(self, stream: BinaryIO) -> None:
        """Read requests until EOF. Tool calls run concurrently on the worker pool."""
        lines = LineBuffer()
        try:
            while True:
                chunk = stream.read1(READ_CHUNK_SIZE) if hasattr(stream, "read1") else stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                for line in lines.feed(chunk):
                    self._handle_line(line)
            tail = lines.flush()
            if tail:
                self._handle_line(tail)
            logger.info("stdin closed")
        finally:
            # Let in-flight calls and waits write their replies before returning.
            self._executor.shutdown(wait=True)
            self.drain()

    def _handle_line(self, line: str) -> None:
        try:
            message = json.loads(line)
        except ValueError as exc:
            logger.warning("mcp parse error: %s", exc)
            return
        if not isinstance(message, dict):
            logger.warning("mcp message is not an object")
            return
        logger.debug("<- %s", message.get("method"))
        if message.get("method") == "tools/call" and not _is_wait(message):
            self._executor.submit(self._dispatch_logged, message)
        else:
            self.dispatch(message)

    def _dispatch_logged(self, message: dict[str, Any]) -> None:
        try:
            self.dispatch(message)
        except Exception:
            logger.exception("dispatch failed")


def main(argv: list[str] | None = None) -> int:
    """Main entry point: start the relay, then serve stdio in MCP mode."""
    parser = argparse.ArgumentParser(prog="bridgemcp", description="Relay MCP and HTTP clients to a browser agent.")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--mcp", action="store_true", help="serve MCP on stdio even when stdin is a TTY")
    mode.add_argument("--http-only", action="store_true", help="serve only the HTTP adapter")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    args = parser.parse_args(argv)

    config = BridgeConfig.from_env()
    config.verbose = config.verbose or args.verbose
    # stdout carries MCP frames; logs go to stderr.
    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )

    from .runtime import BridgeRuntime

    runtime = BridgeRuntime(config)
    runtime.start()
    mcp_mode = args.mcp or (not args.http_only and not sys.stdin.isatty())
    logger.info("mode: %s", "MCP + HTTP" if mcp_mode else "HTTP only")
    logger.info("waiting for browser agent on ws://%s:%s", config.host, runtime.peer_port)

    try:
        if mcp_mode:
            McpServer(runtime.registry, config).serve(sys.stdin.buffer)
        else:
            threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        runtime.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
