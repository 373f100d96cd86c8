"""Agent provisioning for the bridging layer."""

from .controller import AgentHandle, AgentLifecycleController, RestoreReport
from .kinds import KIND_ALIASES, AgentKind, character_for, parse_kind

__all__ = [
    "AgentHandle",
    "AgentKind",
    "AgentLifecycleController",
    "KIND_ALIASES",
    "RestoreReport",
    "character_for",
    "parse_kind",
]
