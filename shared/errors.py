"""Error taxonomy shared by every bridging component.

Each error carries a stable ``kind`` tag and the HTTP status the API layer
renders it with. Callers match on the class; clients match on ``kind``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class BridgeError(RuntimeError):
    """Base class for typed bridging-layer failures."""

    kind = "internal"
    status_code = 500

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.detail:
            payload["detail"] = self.detail
        return payload


class ValidationError(BridgeError):
    """Raised on bad caller input."""

    kind = "validation_error"
    status_code = 400


class NotFound(BridgeError):
    """Raised when an identity, instance or task is unknown."""

    kind = "not_found"
    status_code = 404


class Forbidden(BridgeError):
    """Raised when a principal may not act on a resource."""

    kind = "forbidden"
    status_code = 403


class PersistenceError(BridgeError):
    """Raised when the backing store is unavailable."""

    kind = "persistence_error"
    status_code = 503


class ProvisioningError(BridgeError):
    """Raised when the runtime refuses to create an agent instance."""

    kind = "provisioning_error"
    status_code = 502


class TransportError(BridgeError):
    """Raised when the runtime is unreachable or times out."""

    kind = "transport_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        timed_out: bool = False,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, detail=detail)
        self.timed_out = timed_out
        if timed_out:
            self.status_code = 504


class ProtocolError(BridgeError):
    """Raised when the runtime answers with a malformed response."""

    kind = "protocol_error"
    status_code = 502


__all__ = [
    "BridgeError",
    "ValidationError",
    "NotFound",
    "Forbidden",
    "PersistenceError",
    "ProvisioningError",
    "TransportError",
    "ProtocolError",
]
