"""Redaction helpers for logs: the shared secret must never reach a log line."""

from __future__ import annotations

from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_SENSITIVE_KEYS = {"token", "authorization", "auth", "secret", "password"}
_PLACEHOLDER = "<redacted>"
_MAX_VALUE_CHARS = 200


def redact_url(url: str) -> str:
    """Redact sensitive query parameters, keeping the rest of the URL intact."""
    if not isinstance(url, str) or "?" not in url:
        return url
    parts = urlsplit(url)
    pairs = parse_qsl(parts.query, keep_blank_values=True)
    if not any(k.lower() in _SENSITIVE_KEYS for k, _ in pairs):
        return url
    safe = [(k, _PLACEHOLDER if k.lower() in _SENSITIVE_KEYS else v) for k, v in pairs]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(safe), parts.fragment))


def redact_params(params: Any) -> Any:
    """Copy of ``params`` safe for logging: secrets masked, large strings truncated."""
    if isinstance(params, dict):
        out: dict[str, Any] = {}
        for k, v in params.items():
            if isinstance(k, str) and k.lower() in _SENSITIVE_KEYS:
                out[k] = _PLACEHOLDER
            else:
                out[k] = redact_params(v)
        return out
    if isinstance(params, list):
        return [redact_params(v) for v in params]
    if isinstance(params, str) and len(params) > _MAX_VALUE_CHARS:
        return params[:_MAX_VALUE_CHARS] + f"...(+{len(params) - _MAX_VALUE_CHARS} chars)"
    return params
