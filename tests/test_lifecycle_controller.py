import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from shared.config import BridgeSettings
from shared.database import AgentBinding, ProvisionedAgent, SessionLocal
from shared.errors import Forbidden, NotFound, PersistenceError, ProvisioningError, TransportError, ValidationError
from shared.identity import IdentityResolver
from shared.lifecycle import AgentLifecycleController, parse_kind
from shared.metadata import PinataUploadResult
from shared.registry import RegistrationReceipt
from shared.runtime import RuntimeClient
from shared.tasks import NegotiationTask, TaskStore


def _settings(**overrides):
    values = {"ready_timeout": 0.2, "ready_poll_interval": 0.01, "public_url": "https://bridge.example"}
    values.update(overrides)
    return BridgeSettings(**values)


@pytest_asyncio.fixture
async def parts(fake_runtime):
    runtime = RuntimeClient(fake_runtime.base_url, timeout=2.0, transport=fake_runtime.transport)
    resolver = IdentityResolver()
    store = TaskStore()
    yield runtime, resolver, store
    await runtime.aclose()


def _controller(parts, **kwargs):
    runtime, resolver, store = parts
    settings = kwargs.pop("settings", None) or _settings()
    return AgentLifecycleController(runtime, resolver, store, settings=settings, **kwargs)


def _record(correlation_id):
    session = SessionLocal()
    try:
        return session.get(ProvisionedAgent, correlation_id)
    finally:
        session.close()


def test_kind_aliases_are_accepted():
    assert parse_kind("give").value == "offering"
    assert parse_kind("WANT").value == "seeking"
    with pytest.raises(ValidationError):
        parse_kind("lend")


@pytest.mark.asyncio
async def test_create_starts_instance_and_binds_correlation_id(parts, fake_runtime):
    controller = _controller(parts)
    _, resolver, _ = parts

    handle = await controller.create_agent("give", owner_id="user-1", description="Old bicycle")

    assert handle.internal_id in fake_runtime.instances
    assert fake_runtime.instances[handle.internal_id]["kind"] == "offering"
    assert resolver.resolve(handle.correlation_id) == handle.internal_id
    record = _record(handle.correlation_id)
    assert record.owner_id == "user-1"
    assert record.kind == "offering"
    assert record.status == "active"


@pytest.mark.asyncio
async def test_create_rejects_unknown_kind_without_runtime_call(parts, fake_runtime):
    controller = _controller(parts)

    with pytest.raises(ValidationError):
        await controller.create_agent("lend")

    assert fake_runtime.requests == []


@pytest.mark.asyncio
async def test_runtime_refusal_is_a_provisioning_error(parts, fake_runtime):
    controller = _controller(parts)
    fake_runtime.refuse_create = True

    with pytest.raises(ProvisioningError):
        await controller.create_agent("seeking")

    _, resolver, _ = parts
    assert resolver.bindings() == {}


@pytest.mark.asyncio
async def test_delete_stops_unbinds_and_marks_record(parts, fake_runtime):
    controller = _controller(parts)
    _, resolver, _ = parts
    handle = await controller.create_agent("offering")

    await controller.delete_agent(handle.internal_id)

    assert handle.internal_id not in fake_runtime.instances
    with pytest.raises(NotFound):
        resolver.resolve(handle.correlation_id)
    assert _record(handle.correlation_id).status == "deleted"


@pytest.mark.asyncio
async def test_delete_of_unknown_instance_is_not_found(parts):
    controller = _controller(parts)

    with pytest.raises(NotFound):
        await controller.delete_agent("rt-unknown")


@pytest.mark.asyncio
async def test_failed_bind_leaves_no_instance_or_active_record(parts, fake_runtime, monkeypatch):
    controller = _controller(parts)
    _, resolver, _ = parts
    monkeypatch.setattr(resolver, "bind", AsyncMock(side_effect=PersistenceError("bindings table unavailable")))

    with pytest.raises(PersistenceError):
        await controller.create_agent("offering", owner_id="user-1")

    assert fake_runtime.instances == {}
    session = SessionLocal()
    try:
        statuses = [row.status for row in session.query(ProvisionedAgent).all()]
    finally:
        session.close()
    assert statuses == ["deleted"]

    report = await controller.restore_all()
    assert report.started == []
    assert fake_runtime.instances == {}


@pytest.mark.asyncio
async def test_delete_for_an_owner_refuses_other_principals(parts, fake_runtime):
    controller = _controller(parts)
    handle = await controller.create_agent("offering", owner_id="alice")

    with pytest.raises(Forbidden):
        await controller.delete_agent(handle.internal_id, owner_id="mallory")
    assert handle.internal_id in fake_runtime.instances

    stray = fake_runtime.start_instance()
    with pytest.raises(NotFound):
        await controller.delete_agent(stray, owner_id="alice")
    assert stray in fake_runtime.instances

    await controller.delete_agent(handle.internal_id, owner_id="alice")
    assert handle.internal_id not in fake_runtime.instances


@pytest.mark.asyncio
async def test_delete_racing_attach_leaves_no_binding_behind(parts, fake_runtime):
    controller = _controller(parts)
    _, resolver, _ = parts
    handle = await controller.create_agent("offering")

    await asyncio.gather(
        controller.attach_external_id(handle.correlation_id, "42"),
        controller.delete_agent(handle.internal_id),
        return_exceptions=True,
    )

    assert handle.internal_id not in fake_runtime.instances
    assert resolver.bindings() == {}
    with pytest.raises(NotFound):
        resolver.resolve("42")
    assert _record(handle.correlation_id).status == "deleted"
    session = SessionLocal()
    try:
        assert session.query(AgentBinding).count() == 0
    finally:
        session.close()


@pytest.mark.asyncio
async def test_delete_waits_for_an_in_flight_create(parts, fake_runtime, monkeypatch):
    controller = _controller(parts)
    _, resolver, _ = parts
    entered = asyncio.Event()
    release = asyncio.Event()
    real_bind = resolver.bind

    async def gated_bind(external_id, internal_id):
        entered.set()
        await release.wait()
        return await real_bind(external_id, internal_id)

    monkeypatch.setattr(resolver, "bind", gated_bind)
    creating = asyncio.create_task(controller.create_agent("offering"))
    await entered.wait()

    deleting = asyncio.create_task(controller.delete_agent("rt-1"))
    await asyncio.sleep(0.01)
    assert not deleting.done()
    assert "rt-1" in fake_runtime.instances

    release.set()
    handle = await creating
    await deleting

    assert handle.internal_id == "rt-1"
    assert "rt-1" not in fake_runtime.instances
    assert resolver.bindings() == {}
    assert _record(handle.correlation_id).status == "deleted"


@pytest.mark.asyncio
async def test_static_mode_refuses_create_and_delete(parts):
    controller = _controller(parts, settings=_settings(provisioning_mode="static"))

    with pytest.raises(ValidationError):
        await controller.create_agent("offering")
    with pytest.raises(ValidationError):
        await controller.delete_agent("rt-1")


@pytest.mark.asyncio
async def test_static_boot_starts_one_instance_per_kind(parts, fake_runtime):
    controller = _controller(parts, settings=_settings(provisioning_mode="static"))
    _, resolver, _ = parts

    report = await controller.boot()
    again = await controller.boot()

    assert sorted(report.started) == ["offering", "seeking"]
    assert sorted(again.kept) == ["offering", "seeking"]
    assert len(fake_runtime.instances) == 2
    assert set(resolver.bindings()) == {"offering", "seeking"}


@pytest.mark.asyncio
async def test_attach_external_id_rekeys_binding_and_moves_tasks(parts):
    controller = _controller(parts)
    _, resolver, store = parts
    handle = await controller.create_agent("offering")
    await store.save(handle.correlation_id, NegotiationTask(id="t-1", status={"state": "working"}))

    attached = await controller.attach_external_id(handle.correlation_id, "42", token_uri="ipfs://cid", tx_ref="0xabc")

    assert attached.external_id == "42"
    assert resolver.bindings() == {"42": handle.internal_id}
    assert (await store.load("42", "t-1")).status == {"state": "working"}
    assert await store.load(handle.correlation_id, "t-1") is None
    record = _record(handle.correlation_id)
    assert (record.external_id, record.token_uri, record.registry_status) == ("42", "ipfs://cid", "registered")

    again = await controller.attach_external_id(handle.correlation_id, "42")
    assert again.internal_id == handle.internal_id
    with pytest.raises(ValidationError):
        await controller.attach_external_id(handle.correlation_id, "43")


@pytest.mark.asyncio
async def test_register_on_chain_mints_publishes_and_attaches(parts):
    registry = type("Registry", (), {})()
    registry.registry_ref = "eip155:296:0xregistry"
    registry.register = lambda token_uri="": RegistrationReceipt(external_id="77", tx_ref="0xmint")
    registry.set_token_uri = lambda external_id, token_uri: "0xuri"
    publisher = AsyncMock(
        return_value=PinataUploadResult(
            cid="bafy-test",
            ipfs_uri="ipfs://bafy-test",
            gateway_url="https://gateway.pinata.cloud/ipfs/bafy-test",
            pinata_url="https://app.pinata.cloud/pinmanager?search=bafy-test",
        )
    )
    controller = _controller(parts, registry=registry, publisher=publisher)
    handle = await controller.create_agent("seeking", name="DeskHunter")

    registered = await controller.register_on_chain(handle.correlation_id)

    assert registered.external_id == "77"
    assert registered.token_uri == "ipfs://bafy-test"
    name, document = publisher.await_args.args
    assert name == "77"
    assert document["name"] == "DeskHunter"
    assert document["endpoints"][0] == {"name": "A2A", "endpoint": "https://bridge.example/agents/77/a2a", "version": "0.3.0"}
    assert document["registrations"] == [{"agentId": 77, "agentRegistry": "eip155:296:0xregistry"}]


@pytest.mark.asyncio
async def test_register_without_registry_is_a_provisioning_error(parts):
    controller = _controller(parts)
    handle = await controller.create_agent("seeking")

    with pytest.raises(ProvisioningError):
        await controller.register_on_chain(handle.correlation_id)


@pytest.mark.asyncio
async def test_restore_is_idempotent(parts, fake_runtime):
    controller = _controller(parts)
    _, resolver, _ = parts
    first = await controller.create_agent("offering")
    second = await controller.create_agent("seeking")

    report = await controller.restore_all()
    assert sorted(report.kept) == sorted([first.correlation_id, second.correlation_id])
    assert report.started == []

    # Runtime restarted: every instance is gone
    fake_runtime.instances.clear()
    report = await controller.restore_all()
    assert sorted(report.started) == sorted([first.correlation_id, second.correlation_id])

    bindings = resolver.bindings()
    again = await controller.restore_all()
    assert again.started == []
    assert resolver.bindings() == bindings
    assert len(fake_runtime.instances) == 2


@pytest.mark.asyncio
async def test_concurrent_restores_share_one_pass(parts, fake_runtime):
    controller = _controller(parts)
    await controller.create_agent("offering")
    fake_runtime.instances.clear()

    first, second = await asyncio.gather(controller.restore_all(), controller.restore_all())

    assert first is second
    assert len(fake_runtime.instances) == 1


@pytest.mark.asyncio
async def test_restore_rebinds_from_persisted_bindings_after_process_restart(parts, fake_runtime):
    controller = _controller(parts)
    runtime, _, store = parts
    handle = await controller.create_agent("offering")

    restarted_resolver = IdentityResolver()
    await restarted_resolver.load()
    restarted = AgentLifecycleController(runtime, restarted_resolver, store, settings=_settings())
    report = await restarted.restore_all()

    assert report.kept == [handle.correlation_id]
    assert restarted_resolver.resolve(handle.correlation_id) == handle.internal_id


@pytest.mark.asyncio
async def test_restore_waits_for_runtime_health_with_deadline(parts, fake_runtime):
    controller = _controller(parts)
    fake_runtime.healthy = False

    with pytest.raises(TransportError):
        await controller.restore_all()

    pings = [r for r in fake_runtime.requests if r.url.path == "/api/server/ping"]
    assert len(pings) > 1

    session = SessionLocal()
    try:
        assert session.query(AgentBinding).count() == 0
    finally:
        session.close()
