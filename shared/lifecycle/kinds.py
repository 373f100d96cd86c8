"""Closed enumeration of provisionable agent kinds."""

from __future__ import annotations

import enum
from typing import Any, Dict

from agents.characters import BUYER_CHARACTER, SELLER_CHARACTER, build_character
from shared.errors import ValidationError


class AgentKind(str, enum.Enum):
    """Marketplace role an agent negotiates for."""

    OFFERING = "offering"
    SEEKING = "seeking"


# Marketplace clients still send the original give/want labels
KIND_ALIASES = {"give": AgentKind.OFFERING, "want": AgentKind.SEEKING}

_TEMPLATES = {
    AgentKind.OFFERING: SELLER_CHARACTER,
    AgentKind.SEEKING: BUYER_CHARACTER,
}


def parse_kind(value: Any) -> AgentKind:
    """Return the AgentKind for ``value`` or raise ValidationError."""

    if isinstance(value, AgentKind):
        return value
    text = str(value or "").strip().lower()
    if text in KIND_ALIASES:
        return KIND_ALIASES[text]
    try:
        return AgentKind(text)
    except ValueError as exc:
        allowed = ", ".join(sorted([k.value for k in AgentKind] + list(KIND_ALIASES)))
        raise ValidationError(f"Invalid agent kind {value!r}; expected one of: {allowed}") from exc


def character_for(kind: AgentKind, name: str | None = None) -> Dict[str, Any]:
    return build_character(_TEMPLATES[kind], kind=kind.value, name=name)
