"""HTTP client for the chat-agent runtime that hosts agent instances."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

import httpx

from shared.errors import NotFound, ProtocolError, ProvisioningError, TransportError

logger = logging.getLogger(__name__)


class RuntimeClient:
    """Lifecycle and messaging calls against the agent runtime.

    Every call is bounded by ``timeout``; connection failures and timeouts
    surface as :class:`TransportError`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        protocol_segment: str = "a2a",
        health_path: str = "/api/server/ping",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.protocol_segment = protocol_segment.strip("/")
        self.health_path = "/" + health_path.lstrip("/")
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def start(self, config: Dict[str, Any]) -> str:
        """Start an agent instance from a character config; returns its id."""

        payload = {"kind": config.get("kind"), "character": config}
        response = await self._request("POST", "/internal/agents/create", json=payload)
        if response.status_code >= 400:
            raise ProvisioningError(
                f"Runtime refused agent creation ({response.status_code})",
                detail={"body": _safe_text(response)},
            )
        data = _json_object(response)
        internal_id = data.get("agentId") or data.get("id")
        if not internal_id:
            raise ProtocolError("Runtime create response carried no agent id", detail={"body": data})
        logger.info("Runtime started %s as %s", config.get("name"), internal_id)
        return str(internal_id)

    async def stop(self, internal_id: str) -> None:
        """Stop an agent instance; raises NotFound if it is already gone."""

        response = await self._request("DELETE", f"/internal/agents/{internal_id}")
        if response.status_code == 404:
            raise NotFound(f"Runtime instance {internal_id} does not exist")
        if response.status_code >= 400:
            raise ProvisioningError(
                f"Runtime failed to stop {internal_id} ({response.status_code})",
                detail={"body": _safe_text(response)},
            )
        logger.info("Runtime stopped %s", internal_id)

    async def exists(self, internal_id: str) -> bool:
        response = await self._request("GET", f"/api/agents/{internal_id}")
        if response.status_code == 404:
            return False
        if response.status_code >= 400:
            raise ProtocolError(f"Runtime lookup for {internal_id} failed ({response.status_code})")
        return True

    async def ping(self) -> bool:
        """Health check; False while the runtime is not accepting requests."""

        try:
            response = await self._request("GET", self.health_path)
        except TransportError:
            return False
        return response.status_code < 400

    async def send_message(self, internal_id: str, text: str, *, message_id: Optional[str] = None) -> str:
        """Send an A2A ``message/send`` to an instance and return the reply text."""

        message = {
            "jsonrpc": "2.0",
            "method": "message/send",
            "params": {
                "message": {
                    "kind": "message",
                    "messageId": message_id or f"msg-{uuid4().hex}",
                    "role": "user",
                    "parts": [{"kind": "text", "text": text}],
                },
            },
            "id": uuid4().hex,
        }
        path = f"/agents/{internal_id}/{self.protocol_segment}/"
        response = await self._request("POST", path, json=message)
        if response.status_code == 404:
            raise NotFound(f"Runtime instance {internal_id} does not exist")
        if response.status_code >= 400:
            raise ProtocolError(f"A2A request failed ({response.status_code})", detail={"body": _safe_text(response)})

        data = _json_object(response)
        if "error" in data:
            raise ProtocolError("A2A request returned an error", detail={"error": data["error"]})
        result = data.get("result") or {}
        parts = result.get("parts") or []
        texts = [part.get("text", "") for part in parts if isinstance(part, dict) and part.get("kind") == "text"]
        return "\n".join(text for text in texts if text) or "No response"

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("Runtime %s %s timed out after %ss", method, path, self.timeout)
            raise TransportError(f"Runtime timed out on {method} {path}", timed_out=True) from exc
        except httpx.TransportError as exc:
            logger.warning("Runtime %s %s unreachable: %s", method, path, exc)
            raise TransportError(f"Runtime unreachable on {method} {path}") from exc


def _json_object(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError as exc:
        raise ProtocolError("Runtime returned a non-JSON body", detail={"body": _safe_text(response)}) from exc
    if not isinstance(data, dict):
        raise ProtocolError("Runtime returned an unexpected payload", detail={"body": data})
    # ElizaOS wraps payloads as {"success": true, "data": {...}}
    inner = data.get("data")
    if isinstance(inner, dict) and "agentId" not in data and "result" not in data:
        return {**inner, **{k: v for k, v in data.items() if k != "data"}}
    return data


def _safe_text(response: httpx.Response) -> str:
    try:
        return response.text[:500]
    except Exception:  # noqa: BLE001
        return "<unreadable body>"
