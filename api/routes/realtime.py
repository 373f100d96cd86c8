"""Websocket endpoint and admin hooks of the realtime event router."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field

from shared.errors import BridgeError, ValidationError
from shared.realtime import ChannelEvent, ChannelKey, ChannelKind, WebSocketObserver
from shared.sessions import issue_session

from ..services import BridgeServices, get_services, require_admin_token

logger = logging.getLogger(__name__)

router = APIRouter()
admin_router = APIRouter(dependencies=[Depends(require_admin_token)])


class SessionRequest(BaseModel):
    principal: str = Field(..., min_length=1, max_length=200)


class GrantRequest(BaseModel):
    principal: str = Field(..., min_length=1, max_length=200)


class PublishRequest(BaseModel):
    event: str = Field(..., min_length=1, max_length=100)
    data: Dict[str, Any] = Field(default_factory=dict)


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket, token: Optional[str] = None) -> None:
    services: BridgeServices = websocket.app.state.services
    principal = services.sessions.get(token) if token else None
    if principal is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    observer = WebSocketObserver(websocket, principal)
    logger.info("Observer %s connected for %s", observer.id, principal)
    try:
        while True:
            raw = await websocket.receive_text()
            await _handle_frame(services, observer, raw)
    except WebSocketDisconnect:
        pass
    finally:
        await services.router.on_disconnect(observer)


async def _handle_frame(services: BridgeServices, observer: WebSocketObserver, raw: str) -> None:
    channel_text: Optional[str] = None
    try:
        try:
            frame = json.loads(raw)
        except ValueError as exc:
            raise ValidationError("Frames must be JSON objects") from exc
        if not isinstance(frame, dict):
            raise ValidationError("Frames must be JSON objects")

        frame_type = frame.get("type")
        channel_text = frame.get("channel")
        channel = ChannelKey.parse(channel_text)

        if frame_type == "subscribe":
            await services.router.subscribe(observer, channel)
            await observer.send({"type": "subscribed", "channel": str(channel)})
        elif frame_type == "unsubscribe":
            services.router.unsubscribe(observer, channel)
            await observer.send({"type": "unsubscribed", "channel": str(channel)})
        elif frame_type == "send":
            await services.relay.send(observer, channel, str(frame.get("text") or frame.get("message") or ""))
        else:
            raise ValidationError(f"Unknown frame type {frame_type!r}")
    except BridgeError as exc:
        await observer.send({"type": "error", "channel": channel_text, "error": exc.to_dict()})


@admin_router.post("/sessions", status_code=status.HTTP_201_CREATED)
async def create_session(
    payload: SessionRequest,
    services: BridgeServices = Depends(get_services),
) -> Dict[str, Any]:
    token = issue_session(services.sessions, payload.principal)
    logger.info("Issued realtime session for %s", payload.principal)
    return {"token": token, "expiresIn": services.sessions.ttl_seconds}


@admin_router.post("/channels/{channel_key}/grants")
async def grant_channel(
    channel_key: str,
    payload: GrantRequest,
    services: BridgeServices = Depends(get_services),
) -> Dict[str, Any]:
    channel = ChannelKey.parse(channel_key)
    if channel.kind is ChannelKind.AGENT:
        raise ValidationError("Agent channels are owned by the agent's owner and take no grants")
    created = await services.authorizer.grant(channel, payload.principal)
    return {"channel": str(channel), "principal": payload.principal, "created": created}


@admin_router.post("/channels/{channel_key}/events")
async def publish_event(
    channel_key: str,
    payload: PublishRequest,
    services: BridgeServices = Depends(get_services),
) -> Dict[str, Any]:
    channel = ChannelKey.parse(channel_key)
    delivered = await services.router.publish(channel, ChannelEvent(payload.event, payload.data))
    return {"channel": str(channel), "event": payload.event, "delivered": delivered}
