"""Database models and configuration."""

from .models import (
    Base, NegotiationTaskRecord, AgentBinding, ProvisionedAgent, ChannelGrant,
    AgentStatus, RegistryStatus
)
from .database import engine, init_db, session_scope, SessionLocal

__all__ = [
    "Base", "NegotiationTaskRecord", "AgentBinding", "ProvisionedAgent", "ChannelGrant",
    "AgentStatus", "RegistryStatus",
    "engine", "init_db", "session_scope", "SessionLocal"
]
