"""Agent provisioning and identity routes."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field, field_validator

from shared.errors import Forbidden, NotFound
from shared.lifecycle import KIND_ALIASES, AgentKind

from ..services import BridgeServices, get_services, require_admin_token, require_principal

logger = logging.getLogger(__name__)

# Identity routes are always mounted; provisioning only in dynamic mode
router = APIRouter()
provisioning_router = APIRouter()

_ACCEPTED_KINDS = {kind.value for kind in AgentKind} | set(KIND_ALIASES)


class CreateAgentRequest(BaseModel):
    """Payload for provisioning a new marketplace agent."""

    model_config = ConfigDict(populate_by_name=True)

    kind: str = Field(..., alias="type")
    owner_id: Optional[str] = Field(default=None, alias="ownerId")
    name: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value: Any) -> str:
        text = str(value or "").strip().lower()
        if text not in _ACCEPTED_KINDS:
            raise ValueError(f"kind must be one of: {', '.join(sorted(_ACCEPTED_KINDS))}")
        return text


class RegistrationRequest(BaseModel):
    """Completes on-chain registration; empty body mints through the registry."""

    model_config = ConfigDict(populate_by_name=True)

    external_id: Optional[str] = Field(default=None, alias="externalId")
    token_uri: Optional[str] = Field(default=None, alias="tokenUri")
    tx_ref: Optional[str] = Field(default=None, alias="txRef")


class BindingEntry(BaseModel):
    externalId: str
    internalId: str


class BindingsResponse(BaseModel):
    total: int
    bindings: List[BindingEntry]


@provisioning_router.post("/create", status_code=status.HTTP_201_CREATED)
async def create_agent(
    payload: CreateAgentRequest,
    principal: str = Depends(require_principal),
    services: BridgeServices = Depends(get_services),
) -> Dict[str, Any]:
    if payload.owner_id and payload.owner_id != principal:
        raise Forbidden("Agents can only be created for the signed-in principal")
    handle = await services.lifecycle.create_agent(
        payload.kind,
        owner_id=principal,
        name=payload.name,
        description=payload.description,
    )
    return handle.to_dict()


@provisioning_router.delete("/{internal_id}")
async def delete_agent(
    internal_id: str,
    principal: str = Depends(require_principal),
    services: BridgeServices = Depends(get_services),
) -> Dict[str, bool]:
    try:
        await services.lifecycle.delete_agent(internal_id, owner_id=principal)
    except NotFound:
        # Already gone is the outcome the caller asked for
        logger.info("Delete of unknown instance %s treated as done", internal_id)
    return {"success": True}


@router.get("/bindings", response_model=BindingsResponse)
async def list_bindings(services: BridgeServices = Depends(get_services)) -> BindingsResponse:
    bindings = services.resolver.bindings()
    entries = [BindingEntry(externalId=external, internalId=internal) for external, internal in sorted(bindings.items())]
    return BindingsResponse(total=len(entries), bindings=entries)


@router.get("/{agent_ref}")
async def get_agent(agent_ref: str, services: BridgeServices = Depends(get_services)) -> Dict[str, Any]:
    handle = await services.lifecycle.lookup(agent_ref)
    return handle.to_dict()


@router.post("/{correlation_id}/registration", dependencies=[Depends(require_admin_token)])
async def complete_registration(
    correlation_id: str,
    payload: Optional[RegistrationRequest] = None,
    services: BridgeServices = Depends(get_services),
) -> Dict[str, Any]:
    payload = payload or RegistrationRequest()
    if payload.external_id:
        handle = await services.lifecycle.attach_external_id(
            correlation_id,
            payload.external_id,
            token_uri=payload.token_uri,
            tx_ref=payload.tx_ref,
        )
    else:
        handle = await services.lifecycle.register_on_chain(correlation_id)
    return handle.to_dict()
