import json

import httpx
import pytest

from shared.errors import NotFound, ProtocolError, TransportError
from shared.identity import IdentityResolver
from shared.proxy import ProtocolProxy, RouteTemplate


async def _proxy_for(fake_runtime, segment="protocol"):
    resolver = IdentityResolver()
    internal_id = fake_runtime.start_instance()
    await resolver.bind("42", internal_id)
    proxy = ProtocolProxy(
        resolver,
        fake_runtime.base_url,
        template=RouteTemplate(segment=segment),
        timeout=2.0,
        transport=fake_runtime.transport,
    )
    return proxy, internal_id


async def _body(proxied):
    if proxied.body is not None:
        return proxied.body
    return b"".join([chunk async for chunk in proxied.stream])


def test_route_template_builds_and_matches():
    template = RouteTemplate(segment="protocol")

    assert template.build("7", "tasks/99") == "/agents/7/protocol/tasks/99"
    assert template.build("7") == "/agents/7/protocol"
    assert template.match("/agents/42/protocol/tasks/99") == ("42", "tasks/99")
    assert template.match("/agents/42/protocol") == ("42", None)
    assert template.match("/agents/42/protocol/") == ("42", "")
    assert template.match("/agents/42/other/tasks") is None
    assert template.match("/agents/42") is None


def test_rewrite_only_touches_the_agent_segment():
    template = RouteTemplate(segment="a2a")
    document = {
        "url": "http://rt/agents/7/a2a",
        "nested": ["http://rt/agents/7/a2a/jsonrpc", "http://rt/agents/77/a2a"],
        "other": "/agents/7/a2aextra",
        "count": 7,
    }

    rewritten = template.rewrite_references(document, "7", "42")

    assert rewritten["url"] == "http://rt/agents/42/a2a"
    assert rewritten["nested"] == ["http://rt/agents/42/a2a/jsonrpc", "http://rt/agents/77/a2a"]
    assert rewritten["other"] == "/agents/7/a2aextra"
    assert rewritten["count"] == 7


def test_rewrite_matches_percent_encoded_identifiers():
    template = RouteTemplate(segment="a2a")
    document = {"url": "http://rt/agents/a%20b/a2a", "skills": ["http://rt/agents/a%20b/a2a/jsonrpc"]}

    rewritten = template.rewrite_references(document, "a b", "42")

    assert rewritten["url"] == "http://rt/agents/42/a2a"
    assert rewritten["skills"] == ["http://rt/agents/42/a2a/jsonrpc"]
    assert template.build("a b") == "/agents/a%20b/a2a"


@pytest.mark.asyncio
async def test_forward_rewrites_only_the_agent_identifier(fake_runtime):
    proxy, internal_id = await _proxy_for(fake_runtime)
    try:
        proxied = await proxy.forward("42", "tasks/99", "GET", [("accept", "application/json")])
        payload = json.loads(await _body(proxied))
    finally:
        await proxy.aclose()

    assert proxied.status_code == 200
    assert payload["instance"] == internal_id
    upstream = fake_runtime.requests[-1]
    assert upstream.url.path == f"/agents/{internal_id}/protocol/tasks/99"
    # The runtime echoes its own address; callers only ever see the external one
    assert payload["path"] == "/agents/42/protocol/tasks/99"
    assert upstream.headers["accept"] == "application/json"


@pytest.mark.asyncio
async def test_forward_preserves_encoded_sub_path_query_and_body(fake_runtime):
    proxy, internal_id = await _proxy_for(fake_runtime)
    try:
        proxied = await proxy.forward(
            "42",
            "tasks/a%2Fb",
            "POST",
            [("content-type", "application/json"), ("host", "bridge.example"), ("connection", "keep-alive")],
            body=b'{"jsonrpc":"2.0","method":"tasks/get"}',
            query="history=2",
        )
        payload = json.loads(await _body(proxied))
    finally:
        await proxy.aclose()

    assert payload["body"] == '{"jsonrpc":"2.0","method":"tasks/get"}'
    upstream = fake_runtime.requests[-1]
    assert upstream.url.raw_path == f"/agents/{internal_id}/protocol/tasks/a%2Fb?history=2".encode("ascii")
    assert upstream.headers["host"] != "bridge.example"
    assert "keep-alive" not in upstream.headers.get("connection", "")


@pytest.mark.asyncio
async def test_agent_card_addresses_are_rewritten_to_external_id(fake_runtime):
    proxy, internal_id = await _proxy_for(fake_runtime, segment="a2a")
    try:
        proxied = await proxy.forward("42", ".well-known/agent-card.json", "GET", [])
        card = json.loads(await _body(proxied))
    finally:
        await proxy.aclose()

    assert card["url"] == f"{fake_runtime.base_url}/agents/42/a2a"
    assert card["additionalInterfaces"][0]["url"] == f"{fake_runtime.base_url}/agents/42/a2a/jsonrpc"
    assert card["notes"] == f"/agents/{internal_id}/a2aextra stays"


@pytest.mark.asyncio
async def test_event_streams_are_relayed_unbuffered(fake_runtime):
    proxy, _ = await _proxy_for(fake_runtime)
    try:
        proxied = await proxy.forward("42", "stream", "GET", [])
        assert proxied.body is None
        assert proxied.stream is not None
        assert proxied.media_type == "text/event-stream"
        assert await _body(proxied) == b"data: one\n\ndata: two\n\n"
    finally:
        await proxy.aclose()


@pytest.mark.asyncio
async def test_unbound_agent_is_not_found_without_upstream_call(fake_runtime):
    proxy, _ = await _proxy_for(fake_runtime)
    try:
        with pytest.raises(NotFound):
            await proxy.forward("999", "tasks/1", "GET", [])
    finally:
        await proxy.aclose()

    assert fake_runtime.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "failure, status_code",
    [(httpx.ConnectError, 502), (httpx.ReadTimeout, 504)],
)
async def test_transport_failures_map_to_gateway_errors(fake_runtime, failure, status_code):
    proxy, _ = await _proxy_for(fake_runtime)
    fake_runtime.failure = failure
    try:
        with pytest.raises(TransportError) as excinfo:
            await proxy.forward("42", "tasks/1", "GET", [])
    finally:
        await proxy.aclose()

    assert excinfo.value.status_code == status_code
    assert len(fake_runtime.requests) == 1


@pytest.mark.asyncio
async def test_malformed_upstream_response_is_a_protocol_error(fake_runtime):
    proxy, _ = await _proxy_for(fake_runtime)
    fake_runtime.failure = httpx.RemoteProtocolError
    try:
        with pytest.raises(ProtocolError):
            await proxy.forward("42", "tasks/1", "GET", [])
    finally:
        await proxy.aclose()
