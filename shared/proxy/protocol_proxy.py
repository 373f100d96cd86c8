"""Address-translating forwarder for agent protocol requests."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Iterable, List, Optional, Tuple

import httpx

from shared.errors import NotFound, ProtocolError, TransportError
from shared.identity import IdentityResolver

from .routes import RouteTemplate

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
}

JSON_REWRITE_LIMIT = 1_048_576


@dataclass
class ProxiedResponse:
    """Upstream response ready to be relayed.

    Exactly one of ``body`` and ``stream`` is set. ``stream`` must be fully
    consumed or abandoned; either way the upstream connection is released
    when the iterator finishes.
    """

    status_code: int
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: Optional[bytes] = None
    stream: Optional[AsyncIterator[bytes]] = None
    media_type: Optional[str] = None


class ProtocolProxy:
    """Forward requests addressed by external id to the runtime instance.

    The proxy holds no state between calls and never retries: each inbound
    request produces at most one upstream request.
    """

    def __init__(
        self,
        resolver: IdentityResolver,
        runtime_url: str,
        *,
        template: Optional[RouteTemplate] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.resolver = resolver
        self.template = template or RouteTemplate()
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=runtime_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def upstream_path(self, external_id: str, sub_path: Optional[str]) -> Tuple[str, str]:
        """Resolve ``external_id`` and build the runtime path for ``sub_path``."""

        internal_id = self.resolver.resolve(external_id)
        return internal_id, self.template.build(internal_id, sub_path)

    async def forward(
        self,
        external_id: str,
        sub_path: Optional[str],
        method: str,
        headers: Iterable[Tuple[str, str]],
        body: bytes = b"",
        query: str = "",
    ) -> ProxiedResponse:
        try:
            internal_id, path = self.upstream_path(external_id, sub_path)
        except NotFound:
            logger.info("Protocol call for unbound agent %s", external_id)
            raise

        url = path + (f"?{query}" if query else "")
        request = self._client.build_request(
            method,
            url,
            headers=_forwardable(headers),
            content=body or None,
        )
        logger.info("Proxying %s agent %s -> %s %s", method, external_id, internal_id, path)

        try:
            upstream = await self._client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            logger.warning("Upstream timeout for agent %s after %ss", external_id, self.timeout)
            raise TransportError(f"Runtime timed out for agent {external_id}", timed_out=True) from exc
        except (httpx.RemoteProtocolError, httpx.DecodingError) as exc:
            raise ProtocolError(f"Malformed runtime response for agent {external_id}: {exc}") from exc
        except httpx.TransportError as exc:
            logger.warning("Runtime unreachable for agent %s: %s", external_id, exc)
            raise TransportError(f"Runtime unreachable for agent {external_id}") from exc

        logger.debug("Upstream answered %s for agent %s", upstream.status_code, external_id)
        if self._rewritable(upstream):
            return await self._rewritten(upstream, external_id, internal_id)
        return ProxiedResponse(
            status_code=upstream.status_code,
            headers=_relayable(upstream.headers, keep_encoding=True),
            stream=self._relay(upstream, external_id),
            media_type=upstream.headers.get("content-type"),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _rewritable(upstream: httpx.Response) -> bool:
        content_type = upstream.headers.get("content-type", "")
        length = upstream.headers.get("content-length")
        if "json" not in content_type or "ndjson" in content_type or length is None:
            return False
        try:
            return int(length) <= JSON_REWRITE_LIMIT
        except ValueError:
            return False

    async def _rewritten(
        self,
        upstream: httpx.Response,
        external_id: str,
        internal_id: str,
    ) -> ProxiedResponse:
        try:
            raw = await upstream.aread()
        except httpx.HTTPError as exc:
            raise ProtocolError(f"Malformed runtime response for agent {external_id}: {exc}") from exc
        finally:
            await upstream.aclose()

        body = raw
        try:
            document = json.loads(raw)
        except ValueError:
            logger.debug("Upstream JSON for agent %s did not parse; relaying verbatim", external_id)
        else:
            rewritten = self.template.rewrite_references(document, internal_id, external_id)
            if rewritten != document:
                body = json.dumps(rewritten).encode("utf-8")

        return ProxiedResponse(
            status_code=upstream.status_code,
            headers=_relayable(upstream.headers, keep_encoding=False),
            body=body,
            media_type=upstream.headers.get("content-type"),
        )

    @staticmethod
    async def _relay(upstream: httpx.Response, external_id: str) -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError as exc:
            logger.warning("Upstream stream for agent %s broke: %s", external_id, exc)
        finally:
            await upstream.aclose()


def _forwardable(headers: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    return [(name, value) for name, value in headers if name.lower() not in HOP_BY_HOP_HEADERS]


def _relayable(headers: httpx.Headers, *, keep_encoding: bool) -> List[Tuple[str, str]]:
    relayed = []
    for name, value in headers.multi_items():
        lowered = name.lower()
        if lowered in HOP_BY_HOP_HEADERS or lowered == "content-type":
            continue
        if lowered == "content-encoding" and not keep_encoding:
            continue
        relayed.append((name, value))
    return relayed
