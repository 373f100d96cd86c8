"""Utilities for building and publishing ERC-8004 registration files."""

from .publisher import (
    AgentRegistrationPayload,
    PinataUploadResult,
    PinataCredentialsError,
    PinataUploadError,
    a2a_endpoint_for,
    build_registration_file,
    publish_agent_metadata,
    save_agent_metadata_locally,
)

__all__ = [
    "AgentRegistrationPayload",
    "PinataUploadResult",
    "PinataCredentialsError",
    "PinataUploadError",
    "a2a_endpoint_for",
    "build_registration_file",
    "publish_agent_metadata",
    "save_agent_metadata_locally",
]
