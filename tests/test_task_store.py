import pytest
from sqlalchemy.exc import OperationalError

from shared.database import NegotiationTaskRecord, SessionLocal
from shared.errors import PersistenceError
from shared.tasks import NegotiationTask, TaskStore


@pytest.mark.asyncio
async def test_structured_status_round_trips_verbatim():
    store = TaskStore()
    status = {"state": "working", "timestamp": "2025-11-20T10:00:00Z", "message": {"parts": [{"text": "counter: 9000"}]}}
    task = NegotiationTask(id="task-1", status=status, contextId="ctx-1", history=[{"role": "user"}])

    await store.save("agent-42", task)
    loaded = await store.load("agent-42", "task-1")

    assert loaded is not None
    assert loaded.status == status
    assert loaded.status_label == "working"
    assert loaded.context_id == "ctx-1"
    assert loaded.to_document()["history"] == [{"role": "user"}]


@pytest.mark.asyncio
async def test_plain_status_stays_a_label():
    store = TaskStore()
    await store.save("agent-42", NegotiationTask(id="task-2", status="submitted"))

    loaded = await store.load("agent-42", "task-2")

    assert loaded.status == "submitted"
    session = SessionLocal()
    try:
        record = session.query(NegotiationTaskRecord).filter_by(task_id="task-2").one()
        assert record.status_label == "submitted"
        assert record.status == "submitted"
    finally:
        session.close()


@pytest.mark.asyncio
async def test_save_overwrites_whole_document():
    store = TaskStore()
    await store.save("s", NegotiationTask(id="t", status="working", metadata={"offer": 100}))
    await store.save("s", NegotiationTask(id="t", status={"state": "completed"}))

    loaded = await store.load("s", "t")

    assert loaded.status == {"state": "completed"}
    assert "metadata" not in loaded.to_document()
    session = SessionLocal()
    try:
        assert session.query(NegotiationTaskRecord).filter_by(scope="s", task_id="t").count() == 1
    finally:
        session.close()


@pytest.mark.asyncio
async def test_missing_task_and_foreign_scope_load_none():
    store = TaskStore()
    await store.save("scope-a", NegotiationTask(id="shared-id"))

    assert await store.load("scope-a", "unknown") is None
    assert await store.load("scope-b", "shared-id") is None


@pytest.mark.asyncio
async def test_reassign_scope_moves_tasks():
    store = TaskStore()
    await store.save("corr-1", NegotiationTask(id="a", status="working"))
    await store.save("corr-1", NegotiationTask(id="b", status="completed"))

    moved = await store.reassign_scope("corr-1", "42")

    assert moved == 2
    assert await store.load("corr-1", "a") is None
    assert (await store.load("42", "b")).status == "completed"
    assert await store.reassign_scope("42", "42") == 0


@pytest.mark.asyncio
async def test_scoped_view_binds_scope():
    view = TaskStore().for_scope("room-7")
    await view.save(NegotiationTask(id="t-7", status="input-required"))

    assert (await view.load("t-7")).status == "input-required"
    assert await TaskStore().load("room-8", "t-7") is None


class _BrokenSession:
    def query(self, *args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    def rollback(self):
        pass

    def close(self):
        pass


@pytest.mark.asyncio
async def test_backing_store_failure_raises_persistence_error():
    store = TaskStore(session_factory=_BrokenSession)

    with pytest.raises(PersistenceError):
        await store.save("s", NegotiationTask(id="t"))
    with pytest.raises(PersistenceError):
        await store.load("s", "t")
