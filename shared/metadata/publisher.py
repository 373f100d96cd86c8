"""ERC-8004 registration file builder and Pinata publishing helper."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

PINATA_PIN_JSON_URL = "https://api.pinata.cloud/pinning/pinJSONToIPFS"
METADATA_DIR = Path(__file__).resolve().parent.parent.parent / "agent_metadata"
REGISTRATION_TYPE = "https://eips.ethereum.org/EIPS/eip-8004#registration-v1"


@dataclass(slots=True)
class PinataUploadResult:
    """Details about a Pinata upload."""

    cid: str
    ipfs_uri: str
    gateway_url: str
    pinata_url: str


@dataclass(slots=True)
class AgentRegistrationPayload:
    """Inputs for an agent's registration file."""

    external_id: str
    name: str
    description: str
    kind: str
    a2a_endpoint: str
    registry_ref: str
    protocol_version: str = "0.3.0"
    image_url: Optional[str] = None
    owner_id: Optional[str] = None
    supported_trust: Optional[List[str]] = None


class PinataCredentialsError(RuntimeError):
    """Raised when Pinata credentials are missing."""


class PinataUploadError(RuntimeError):
    """Raised when a Pinata upload fails."""


def _ensure_metadata_dir() -> None:
    """Ensure the agent metadata directory exists."""
    METADATA_DIR.mkdir(parents=True, exist_ok=True)


def save_agent_metadata_locally(name: str, metadata: Dict[str, Any]) -> Path:
    """
    Persist a registration file for audit purposes.

    Args:
        name: File stem, usually the external agent id.
        metadata: Registration document to serialize.

    Returns:
        Path to the persisted file.
    """
    _ensure_metadata_dir()

    path = METADATA_DIR / f"{name}.json"
    with path.open("w", encoding="utf-8") as fh:
        json.dump(metadata, fh, indent=2)

    return path


def a2a_endpoint_for(public_url: str, external_id: str, segment: str = "a2a") -> str:
    """Public protocol address of an agent, as callers reach it through the bridge."""

    return f"{public_url.rstrip('/')}/agents/{external_id}/{segment.strip('/')}"


def build_registration_file(data: AgentRegistrationPayload) -> Dict[str, Any]:
    """
    Construct an ERC-8004 registration file (the token URI content).

    The A2A endpoint always points at the bridge, never at the runtime, so
    the on-chain identity stays valid when the runtime instance changes.
    """
    if not data.a2a_endpoint:
        raise ValueError("An A2A endpoint is required for ERC-8004 metadata")

    try:
        agent_id: Any = int(data.external_id)
    except ValueError:
        agent_id = data.external_id

    document: Dict[str, Any] = {
        "type": REGISTRATION_TYPE,
        "name": data.name,
        "description": data.description,
        "agentType": data.kind,
        "endpoints": [
            {"name": "A2A", "endpoint": data.a2a_endpoint, "version": data.protocol_version},
            {"name": "agentType", "endpoint": data.kind},
        ],
        "registrations": [{"agentId": agent_id, "agentRegistry": data.registry_ref}],
        "supportedTrust": data.supported_trust if data.supported_trust is not None else ["reputation"],
        "updatedAt": datetime.now(timezone.utc).isoformat(),
    }
    if data.image_url:
        document["image"] = data.image_url
    if data.owner_id:
        document["owner"] = data.owner_id
    return document


def _get_pinata_headers() -> Dict[str, str]:
    """Return Pinata authentication headers or raise if missing."""
    api_key = os.getenv("PINATA_API_KEY")
    secret_key = os.getenv("PINATA_SECRET_KEY")

    if not api_key or not secret_key:
        raise PinataCredentialsError("Pinata credentials are not configured")

    return {
        "pinata_api_key": api_key,
        "pinata_secret_api_key": secret_key,
        "Content-Type": "application/json",
    }


async def publish_agent_metadata(
    name: str,
    metadata: Dict[str, Any],
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> PinataUploadResult:
    """
    Persist the registration file locally and pin it to IPFS through Pinata.

    Raises:
        PinataCredentialsError if credentials missing.
        PinataUploadError if upload fails.
    """
    path = save_agent_metadata_locally(name, metadata)
    try:
        headers = _get_pinata_headers()

        payload = {
            "pinataMetadata": {
                "name": f"{name}.json",
                "keyvalues": {"type": "agent_registration"},
            },
            "pinataContent": metadata,
        }

        async with httpx.AsyncClient(timeout=30.0, transport=transport) as client:
            response = await client.post(
                PINATA_PIN_JSON_URL,
                headers=headers,
                json=payload,
            )
        response.raise_for_status()
        result = response.json()
    except PinataCredentialsError:
        path.unlink(missing_ok=True)
        raise
    except httpx.HTTPStatusError as exc:
        path.unlink(missing_ok=True)
        body = exc.response.text
        logger.error("Pinata upload failed: %s - %s", exc, body)
        raise PinataUploadError(f"Pinata upload failed: {exc.response.status_code} {body}") from exc
    except Exception as exc:  # noqa: BLE001
        path.unlink(missing_ok=True)
        logger.exception("Unexpected error uploading registration file for %s", name)
        raise PinataUploadError(str(exc)) from exc

    cid = result.get("IpfsHash")
    if not cid:
        logger.error("Pinata response missing IpfsHash: %s", result)
        path.unlink(missing_ok=True)
        raise PinataUploadError("Pinata response missing IpfsHash")

    logger.info("Pinned registration file for %s as %s", name, cid)
    return PinataUploadResult(
        cid=cid,
        ipfs_uri=f"ipfs://{cid}",
        gateway_url=f"https://gateway.pinata.cloud/ipfs/{cid}",
        pinata_url=f"https://app.pinata.cloud/pinmanager?search={cid}",
    )
