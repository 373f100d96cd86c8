"""Negotiation task persistence."""

from .models import NegotiationTask, TaskStatus
from .store import ScopedTaskStore, TaskStore

__all__ = ["NegotiationTask", "TaskStatus", "TaskStore", "ScopedTaskStore"]
