"""Protocol metadata advertised on the stdio surface."""

from __future__ import annotations

from typing import Any

from ..config import VERSION
from .definitions import TOOL_DEFINITIONS

SERVER_INFO: dict[str, str] = {"name": "bridgemcp", "version": VERSION}

SUPPORTED_PROTOCOL_VERSIONS = ["2025-06-18", "2025-03-26", "2024-11-05"]
DEFAULT_PROTOCOL_VERSION = "2024-11-05"

CAPABILITIES: dict[str, Any] = {"tools": {}}


def select_protocol(requested: Any) -> str:
    if isinstance(requested, str) and requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return DEFAULT_PROTOCOL_VERSION


def initialize_result(protocol: str) -> dict[str, Any]:
    return {
        "protocolVersion": protocol,
        "capabilities": CAPABILITIES,
        "serverInfo": SERVER_INFO,
    }


def tools_list() -> list[dict[str, Any]]:
    return TOOL_DEFINITIONS
