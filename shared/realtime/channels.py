"""Channel addressing and event envelopes."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict

from shared.errors import ValidationError


class ChannelKind(str, enum.Enum):
    AGENT = "agent"
    BUY_REQUEST = "buyRequest"
    NEGOTIATION = "negotiation"


@dataclass(frozen=True)
class ChannelKey:
    """``(kind, id)`` address of a realtime channel, rendered ``kind:id``."""

    kind: ChannelKind
    id: str

    @classmethod
    def parse(cls, value: Any) -> "ChannelKey":
        if isinstance(value, ChannelKey):
            return value
        text = str(value or "")
        kind, sep, ident = text.partition(":")
        if not sep or not ident.strip():
            raise ValidationError(f"Channel key {text!r} must look like '<kind>:<id>'")
        try:
            channel_kind = ChannelKind(kind)
        except ValueError as exc:
            allowed = ", ".join(k.value for k in ChannelKind)
            raise ValidationError(f"Unknown channel kind {kind!r}; expected one of: {allowed}") from exc
        return cls(channel_kind, ident.strip())

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ChannelEvent:
    """Named event published on a channel, e.g. ``negotiation:statusChanged``."""

    name: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_now)

    def to_frame(self, channel: ChannelKey) -> Dict[str, Any]:
        return {
            "type": "event",
            "channel": str(channel),
            "event": self.name,
            "data": self.data,
            "timestamp": self.timestamp,
        }
