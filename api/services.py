"""Process-wide collaborators shared by the HTTP and websocket routes."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from fastapi import Header, HTTPException, Request, status

from shared.config import BridgeSettings
from shared.identity import IdentityResolver
from shared.lifecycle import AgentLifecycleController
from shared.proxy import ProtocolProxy, RouteTemplate
from shared.realtime import ChannelAuthorizer, EventRouter, MessageRelay
from shared.registry import AgentRegistryConfigError, get_registry_client
from shared.runtime import RuntimeClient
from shared.sessions import ExpiringStore
from shared.tasks import TaskStore

logger = logging.getLogger(__name__)


@dataclass
class BridgeServices:
    settings: BridgeSettings
    resolver: IdentityResolver
    task_store: TaskStore
    runtime: RuntimeClient
    proxy: ProtocolProxy
    lifecycle: AgentLifecycleController
    authorizer: ChannelAuthorizer
    router: EventRouter
    relay: MessageRelay
    sessions: ExpiringStore[str]

    async def aclose(self) -> None:
        await self.proxy.aclose()
        await self.runtime.aclose()


def default_registry() -> Any:
    """Registry client when configured, otherwise None (registration disabled)."""

    if not os.getenv("IDENTITY_REGISTRY_ADDRESS"):
        return None
    try:
        return get_registry_client()
    except AgentRegistryConfigError as exc:
        logger.warning("Identity registry unavailable; on-chain registration disabled: %s", exc)
        return None


def build_services(
    settings: BridgeSettings,
    *,
    runtime_transport: Optional[httpx.AsyncBaseTransport] = None,
    registry: Any = None,
) -> BridgeServices:
    """Wire the bridging components together for one application instance."""

    resolver = IdentityResolver()
    task_store = TaskStore()
    runtime = RuntimeClient(
        settings.runtime_url,
        protocol_segment=settings.protocol_segment,
        health_path=settings.runtime_health_path,
        timeout=settings.runtime_timeout,
        transport=runtime_transport,
    )
    proxy = ProtocolProxy(
        resolver,
        settings.runtime_url,
        template=RouteTemplate(segment=settings.protocol_segment),
        timeout=settings.proxy_timeout,
        transport=runtime_transport,
    )
    lifecycle = AgentLifecycleController(
        runtime,
        resolver,
        task_store,
        settings=settings,
        registry=registry,
    )
    authorizer = ChannelAuthorizer()
    router = EventRouter(authorizer, delivery_timeout=settings.delivery_timeout)
    return BridgeServices(
        settings=settings,
        resolver=resolver,
        task_store=task_store,
        runtime=runtime,
        proxy=proxy,
        lifecycle=lifecycle,
        authorizer=authorizer,
        router=router,
        relay=MessageRelay(router, runtime, lifecycle),
        sessions=ExpiringStore(settings.session_ttl),
    )


def get_services(request: Request) -> BridgeServices:
    return request.app.state.services


def require_admin_token(
    request: Request,
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
) -> None:
    """Enforce the admin header when an admin token is configured."""

    required = request.app.state.services.settings.admin_token
    if not required:
        return
    if x_admin_token != required:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin token",
        )


def require_principal(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> str:
    """Principal behind the ``Authorization: Bearer <session>`` header."""

    scheme, _, token = (authorization or "").partition(" ")
    principal = None
    if scheme.lower() == "bearer" and token.strip():
        principal = request.app.state.services.sessions.get(token.strip())
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing session token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal
