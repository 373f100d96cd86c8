"""SQLAlchemy models for the bridging layer."""

from sqlalchemy import (
    Column,
    String,
    Integer,
    DateTime,
    Text,
    JSON,
    Index,
    UniqueConstraint,
)
from datetime import datetime
import enum

from .database import Base


class AgentStatus(str, enum.Enum):
    """Provisioning status of an agent record."""

    ACTIVE = "active"
    DELETED = "deleted"


class RegistryStatus(str, enum.Enum):
    """On-chain registration progress of an agent record."""

    UNREGISTERED = "unregistered"
    PENDING = "pending"
    REGISTERED = "registered"
    FAILED = "failed"


class NegotiationTaskRecord(Base):
    """Latest snapshot of a negotiation task within a scope."""

    __tablename__ = "negotiation_tasks"
    __table_args__ = (
        UniqueConstraint("scope", "task_id", name="uq_negotiation_tasks_scope_task"),
        Index("ix_negotiation_tasks_scope_task", "scope", "task_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    scope = Column(String, nullable=False)
    task_id = Column(String, nullable=False)
    status_label = Column(String, nullable=True)  # Queryable state label
    status = Column(JSON, nullable=True)  # Verbatim status, label or structured
    payload = Column(JSON, nullable=False)  # Full task document
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AgentBinding(Base):
    """Durable external -> internal agent identity binding."""

    __tablename__ = "agent_bindings"

    external_id = Column(String, primary_key=True)
    internal_id = Column(String, nullable=False, unique=True)
    bound_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ProvisionedAgent(Base):
    """Ledger of agents provisioned through the lifecycle controller."""

    __tablename__ = "provisioned_agents"

    id = Column(String, primary_key=True)  # Correlation id
    kind = Column(String, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text)
    owner_id = Column(String, nullable=True, index=True)
    status = Column(String, default=AgentStatus.ACTIVE.value)
    external_id = Column(String, nullable=True, unique=True)
    token_uri = Column(String, nullable=True)
    registry_tx = Column(String, nullable=True)
    registry_status = Column(String, default=RegistryStatus.UNREGISTERED.value)
    registry_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def binding_key(self) -> str:
        """Identity the resolver knows this agent by."""
        return self.external_id or self.id


class ChannelGrant(Base):
    """Principal allowed to observe a buy-request or negotiation channel."""

    __tablename__ = "channel_grants"
    __table_args__ = (UniqueConstraint("channel_key", "principal", name="uq_channel_grants"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    channel_key = Column(String, nullable=False, index=True)
    principal = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
