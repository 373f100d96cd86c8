"""Protocol proxy between external callers and runtime agent instances."""

from .protocol_proxy import ProtocolProxy, ProxiedResponse
from .routes import RouteTemplate

__all__ = ["ProtocolProxy", "ProxiedResponse", "RouteTemplate"]
