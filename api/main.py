"""FastAPI application - Agent identity and negotiation bridge."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shared.config import BridgeSettings
from shared.database import init_db
from shared.errors import BridgeError

from .middleware import logging_middleware
from .routes import agents as agents_routes
from .routes import protocol as protocol_routes
from .routes import realtime as realtime_routes
from .routes import tasks as tasks_routes
from .services import BridgeServices, build_services, default_registry

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

_DEFAULT_REGISTRY = object()


def create_app(
    settings: Optional[BridgeSettings] = None,
    *,
    runtime_transport: Optional[httpx.AsyncBaseTransport] = None,
    registry: Any = _DEFAULT_REGISTRY,
) -> FastAPI:
    """Build the bridge application.

    ``runtime_transport`` and ``registry`` exist so tests can stand in for the
    agent runtime and the identity registry.
    """

    settings = settings or BridgeSettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup/shutdown."""
        init_db()
        services = build_services(
            settings,
            runtime_transport=runtime_transport,
            registry=default_registry() if registry is _DEFAULT_REGISTRY else registry,
        )
        app.state.services = services
        await services.resolver.load()
        logger.info(
            "Bridge ready (mode=%s, runtime=%s, %d binding(s))",
            settings.provisioning_mode,
            settings.runtime_url,
            len(services.resolver),
        )

        recovery: Optional[asyncio.Task] = None
        if settings.restore_on_startup or not settings.dynamic:
            recovery = asyncio.create_task(_recover(services))
        try:
            yield
        finally:
            logger.info("Shutting down bridge")
            if recovery is not None and not recovery.done():
                recovery.cancel()
                await asyncio.gather(recovery, return_exceptions=True)
            await services.aclose()

    app = FastAPI(
        title="Agent Identity Bridge",
        description="Maps on-chain agent identities to runtime agent instances, proxies A2A traffic and fans out realtime events",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(logging_middleware)

    @app.exception_handler(BridgeError)
    async def bridge_error_handler(request: Request, exc: BridgeError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.kind)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg", "Invalid request"))
        return JSONResponse(status_code=400, content={"error": {"kind": "validation_error", "message": message}})

    # Include routers
    app.include_router(agents_routes.router, prefix="/agents", tags=["agents"])
    if settings.dynamic:
        app.include_router(agents_routes.provisioning_router, prefix="/agents", tags=["agents"])
    app.include_router(protocol_routes.build_router(settings.protocol_segment), prefix="/agents")
    app.include_router(tasks_routes.router, prefix="/tasks", tags=["tasks"])
    app.include_router(realtime_routes.router)
    app.include_router(realtime_routes.admin_router, tags=["realtime"])

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        services: BridgeServices = request.app.state.services
        return {
            "status": "healthy",
            "mode": settings.provisioning_mode,
            "runtime": "up" if await services.runtime.ping() else "down",
            "bindings": len(services.resolver),
        }

    return app


async def _recover(services: BridgeServices) -> None:
    try:
        if services.settings.dynamic:
            await services.lifecycle.restore_all()
        else:
            await services.lifecycle.boot()
    except BridgeError as exc:
        logger.error("Agent recovery failed: %s", exc)


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=8000)
