"""Error taxonomy shared by the relay core and both protocol adapters.

Every failure the bridge reports is a ``BridgeError`` subclass with a stable
``kind``. Adapters map kinds to their wire shape (JSON-RPC error objects,
HTTP status codes); ``public_message`` is what may be shown to a client when
the concrete message must not leak.
"""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    kind = "Internal"
    public_message = "Internal server error"

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        self.details = details or {}

    def to_dict(self, *, public: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": self.kind,
            "message": self.public_message if public else self.message,
        }
        if self.details and not public:
            payload["details"] = self.details
        return payload


# Relay-level failures (raised by ConnectionRegistry)


class PeerUnavailable(BridgeError):
    kind = "PeerUnavailable"
    public_message = "Browser agent is not connected"


class Overloaded(BridgeError):
    kind = "Overloaded"
    public_message = "Too many outstanding calls"


class CallTimeout(BridgeError):
    kind = "Timeout"
    public_message = "Browser agent did not reply in time"


class PeerDisconnected(BridgeError):
    kind = "PeerDisconnected"
    public_message = "Browser agent disconnected"


class ActionFailed(BridgeError):
    """The peer executed the action and reported a failure for it."""

    kind = "ActionFailed"
    public_message = "Action failed"

    def to_dict(self, *, public: bool = False) -> dict[str, Any]:
        # The peer's error text is the action's own result, not relay internals.
        return super().to_dict(public=False)


# Adapter-level failures (raised by the security gate and adapters)


class Unauthenticated(BridgeError):
    kind = "Unauthenticated"
    public_message = "Missing or invalid token"


class RateLimited(BridgeError):
    kind = "RateLimited"
    public_message = "Too many requests"

    def __init__(self, message: str | None = None, *, retry_after: float = 0.0) -> None:
        super().__init__(message)
        self.retry_after = max(0.0, float(retry_after))


class BadRequest(BridgeError):
    kind = "BadRequest"
    public_message = "Malformed request"


class PayloadTooLarge(BadRequest):
    kind = "PayloadTooLarge"
    public_message = "Request body too large"


class Forbidden(BridgeError):
    kind = "Forbidden"
    public_message = "Origin not allowed"


class NotFound(BridgeError):
    kind = "NotFound"
    public_message = "Not found"


RELAY_ERRORS = (PeerUnavailable, Overloaded, CallTimeout, PeerDisconnected, ActionFailed)
