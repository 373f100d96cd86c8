"""HTTP middleware for the bridge API."""

from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import Request

logger = logging.getLogger("bridge.requests")


async def logging_middleware(request: Request, call_next):
    """Log method, path, status and latency of every request."""

    request_id = request.headers.get("x-request-id") or uuid4().hex[:12]
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.exception("%s %s failed after %.1fms [%s]", request.method, request.url.path, elapsed_ms, request_id)
        raise

    elapsed_ms = (time.perf_counter() - started) * 1000
    # Streamed responses are logged when headers go out, not when the body ends
    logger.info(
        "%s %s -> %s in %.1fms [%s]",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
        request_id,
    )
    response.headers["X-Request-ID"] = request_id
    return response
