"""Realtime channels, observers and event fan-out."""

from .authorization import ChannelAuthorizer
from .channels import ChannelEvent, ChannelKey, ChannelKind
from .observers import Observer, WebSocketObserver
from .relay import MessageRelay
from .router import EventRouter

__all__ = [
    "ChannelAuthorizer",
    "ChannelEvent",
    "ChannelKey",
    "ChannelKind",
    "EventRouter",
    "MessageRelay",
    "Observer",
    "WebSocketObserver",
]
