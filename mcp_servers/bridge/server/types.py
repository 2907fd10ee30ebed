"""
Result shapes for the stdio (MCP) surface.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

_DATA_URL_PREFIX = "base64,"


@dataclass(slots=True)
class ToolContent:
    """Single content item in a tools/call result."""

    type: str  # "text" or "image"
    text: str | None = None
    data: str | None = None  # base64 for images
    mime_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.type == "image":
            return {"type": "image", "data": self.data, "mimeType": self.mime_type}
        return {"type": "text", "text": self.text}


@dataclass(slots=True)
class ToolResult:
    """Successful tool output, rendered as MCP content."""

    content: list[ToolContent] = field(default_factory=list)
    data: Any | None = None

    @classmethod
    def json(cls, data: Any) -> ToolResult:
        text = json.dumps(data, ensure_ascii=False)
        return cls(content=[ToolContent(type="text", text=text)], data=data)

    @classmethod
    def screenshot(cls, data: Any) -> ToolResult:
        """JSON text plus an image item when the payload carries a PNG data URL."""
        result = cls.json(data)
        shot = data.get("screenshot") if isinstance(data, dict) else None
        if isinstance(shot, str) and shot:
            b64 = shot.split(_DATA_URL_PREFIX, 1)[1] if shot.startswith("data:") and _DATA_URL_PREFIX in shot else shot
            mime = "image/png"
            if shot.startswith("data:") and ";" in shot:
                mime = shot[5 : shot.index(";")] or mime
            result.content.append(ToolContent(type="image", data=b64, mime_type=mime))
        return result

    def to_content_list(self) -> list[dict[str, Any]]:
        return [c.to_dict() for c in self.content]
