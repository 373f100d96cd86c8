"""Agent runtime collaborator."""

from .client import RuntimeClient

__all__ = ["RuntimeClient"]
