"""Pass-through routes for agent protocol traffic."""

from __future__ import annotations

from urllib.parse import unquote

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response, StreamingResponse

from shared.errors import NotFound
from shared.proxy import ProxiedResponse

from ..services import BridgeServices, get_services

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]


def build_router(segment: str) -> APIRouter:
    """Routes for ``/agents/{external_id}/{segment}`` and everything below it."""

    router = APIRouter()
    segment = segment.strip("/")

    @router.api_route(f"/{{external_id}}/{segment}", methods=PROXY_METHODS, include_in_schema=False)
    @router.api_route(f"/{{external_id}}/{segment}/{{sub_path:path}}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy_protocol(request: Request, services: BridgeServices = Depends(get_services)) -> Response:
        # Match on the raw path so the sub path reaches the runtime undecoded
        raw_path = request.scope.get("raw_path") or request.url.path.encode("utf-8")
        raw_path = raw_path.split(b"?", 1)[0]
        matched = services.proxy.template.match(raw_path.decode("latin-1"))
        if matched is None:
            raise NotFound(f"No agent protocol route for {request.url.path}")
        external_id, sub_path = matched

        body = await request.body()
        proxied = await services.proxy.forward(
            unquote(external_id),
            sub_path,
            request.method,
            request.headers.items(),
            body=body,
            query=request.url.query,
        )
        return _to_response(proxied)

    return router


def _to_response(proxied: ProxiedResponse) -> Response:
    if proxied.stream is not None:
        response: Response = StreamingResponse(
            proxied.stream,
            status_code=proxied.status_code,
            media_type=proxied.media_type,
        )
    else:
        response = Response(
            content=proxied.body or b"",
            status_code=proxied.status_code,
            media_type=proxied.media_type,
        )
    for name, value in proxied.headers:
        response.headers.append(name, value)
    return response
