"""Stdio tool definitions and the tool → peer action table."""

from __future__ import annotations

from typing import Any

WAIT_TOOL = "browser_wait"
SCREENSHOT_TOOL = "browser_screenshot"

_TAB_ID = {"type": "number", "description": "Optional tab ID"}


def _tool(name: str, description: str, properties: dict[str, Any], required: list[str] | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return {"name": name, "description": description, "inputSchema": schema}


TOOL_DEFINITIONS: list[dict[str, Any]] = [
    _tool(
        "browser_navigate",
        "Navigate to a URL",
        {"url": {"type": "string", "description": "URL to navigate to"}, "tabId": _TAB_ID},
        ["url"],
    ),
    _tool("browser_back", "Go back in browser history", {"tabId": _TAB_ID}),
    _tool("browser_forward", "Go forward in browser history", {"tabId": _TAB_ID}),
    _tool(
        "browser_click",
        "Click an element on the page",
        {
            "selector": {"type": "string", "description": "CSS selector to click"},
            "x": {"type": "number", "description": "X coordinate (alternative to selector)"},
            "y": {"type": "number", "description": "Y coordinate (alternative to selector)"},
            "tabId": _TAB_ID,
        },
    ),
    _tool(
        "browser_type",
        "Type text into an element",
        {
            "text": {"type": "string", "description": "Text to type"},
            "selector": {"type": "string", "description": "CSS selector (optional, uses focused element)"},
            "submit": {"type": "boolean", "description": "Press Enter after typing"},
            "tabId": _TAB_ID,
        },
        ["text"],
    ),
    _tool(
        "browser_hover",
        "Hover over an element",
        {
            "selector": {"type": "string", "description": "CSS selector to hover"},
            "x": {"type": "number", "description": "X coordinate (alternative)"},
            "y": {"type": "number", "description": "Y coordinate (alternative)"},
            "tabId": _TAB_ID,
        },
    ),
    _tool(
        "browser_drag",
        "Drag and drop between elements",
        {
            "from": {"type": "string", "description": "Source element selector"},
            "to": {"type": "string", "description": "Target element selector"},
            "tabId": _TAB_ID,
        },
        ["from", "to"],
    ),
    _tool(
        "browser_press_key",
        "Press a keyboard key",
        {"key": {"type": "string", "description": "Key to press (Enter, Tab, Escape, etc.)"}, "tabId": _TAB_ID},
        ["key"],
    ),
    _tool(
        "browser_select",
        "Select option in a dropdown",
        {
            "selector": {"type": "string", "description": "Select element CSS selector"},
            "values": {"type": "array", "items": {"type": "string"}, "description": "Values to select"},
            "tabId": _TAB_ID,
        },
        ["selector", "values"],
    ),
    _tool("browser_snapshot", "Get accessibility snapshot of the page", {"tabId": _TAB_ID}),
    _tool(SCREENSHOT_TOOL, "Take a screenshot of the visible tab", {"tabId": _TAB_ID}),
    _tool("browser_console_logs", "Get console logs from the page", {"tabId": _TAB_ID}),
    _tool("browser_tabs", "List all open browser tabs", {}),
    _tool("browser_new_tab", "Open a new browser tab", {"url": {"type": "string", "description": "URL to open (optional)"}}),
    _tool(
        "browser_close_tab",
        "Close a browser tab",
        {"tabId": {"type": "number", "description": "Tab ID to close"}},
        ["tabId"],
    ),
    _tool(
        WAIT_TOOL,
        "Wait for specified seconds",
        {"time": {"type": "number", "description": "Seconds to wait (max 300)"}},
        ["time"],
    ),
]

# browser_wait is handled locally and intentionally absent here.
TOOL_TO_ACTION: dict[str, str] = {
    "browser_navigate": "navigate",
    "browser_back": "goBack",
    "browser_forward": "goForward",
    "browser_click": "click",
    "browser_type": "type",
    "browser_hover": "hover",
    "browser_drag": "dragDrop",
    "browser_press_key": "pressKey",
    "browser_select": "selectOption",
    "browser_snapshot": "snapshot",
    SCREENSHOT_TOOL: "screenshot",
    "browser_console_logs": "getConsoleLogs",
    "browser_tabs": "getTabs",
    "browser_new_tab": "newTab",
    "browser_close_tab": "closeTab",
}
