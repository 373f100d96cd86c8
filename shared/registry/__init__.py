"""Registry helpers for on-chain agent identities."""

from .registrar import (
    AgentRegistryClient,
    AgentRegistryConfigError,
    AgentRegistryRegistrationError,
    AgentRegistrySettings,
    RegistrationReceipt,
    get_registry_client,
)

__all__ = [
    "AgentRegistryClient",
    "AgentRegistryConfigError",
    "AgentRegistryRegistrationError",
    "AgentRegistrySettings",
    "RegistrationReceipt",
    "get_registry_client",
]
