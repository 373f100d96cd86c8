import json
import os
import re
import tempfile
from pathlib import Path
from typing import Dict, List

import httpx
import pytest

# Configure isolated SQLite database and Pinata credentials before app imports
_temp_dir = Path(tempfile.mkdtemp(prefix="bridge-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_temp_dir / 'test.db'}")
os.environ.setdefault("PINATA_API_KEY", "test-api-key")
os.environ.setdefault("PINATA_SECRET_KEY", "test-secret-key")
os.environ.setdefault("BRIDGE_RESTORE_ON_STARTUP", "0")
os.environ.pop("IDENTITY_REGISTRY_ADDRESS", None)
os.environ.pop("BRIDGE_ADMIN_TOKEN", None)

RUNTIME_URL = "http://runtime.test"


@pytest.fixture(scope="session", autouse=True)
def _prepare_database():
    """Create all tables in the isolated SQLite database."""
    from shared.database import Base, engine, init_db

    Base.metadata.drop_all(bind=engine)
    init_db()
    yield


@pytest.fixture(autouse=True)
def _clean_tables():
    from shared.database import AgentBinding, ChannelGrant, NegotiationTaskRecord, ProvisionedAgent, SessionLocal

    session = SessionLocal()
    try:
        for model in (NegotiationTaskRecord, AgentBinding, ProvisionedAgent, ChannelGrant):
            session.query(model).delete()
        session.commit()
    finally:
        session.close()
    yield


class FakeRuntime:
    """In-memory stand-in for the agent runtime, served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.instances: Dict[str, dict] = {}
        self.requests: List[httpx.Request] = []
        self.healthy = True
        self.refuse_create = False
        self.reply = "Happy to negotiate"
        self.failure = None
        self._counter = 0
        self.base_url = RUNTIME_URL

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def start_instance(self, character=None) -> str:
        self._counter += 1
        internal_id = f"rt-{self._counter}"
        self.instances[internal_id] = character or {}
        return internal_id

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failure is not None:
            raise self.failure(f"simulated {self.failure.__name__}", request=request)

        path = request.url.path
        if path == "/api/server/ping":
            return httpx.Response(200 if self.healthy else 503, json={"pong": self.healthy})

        if path == "/internal/agents/create" and request.method == "POST":
            if self.refuse_create:
                return httpx.Response(500, json={"success": False, "error": "no capacity"})
            body = json.loads(request.content)
            internal_id = self.start_instance(body.get("character"))
            return httpx.Response(201, json={"success": True, "data": {"agentId": internal_id}})

        match = re.fullmatch(r"/internal/agents/([^/]+)", path)
        if match and request.method == "DELETE":
            if self.instances.pop(match.group(1), None) is None:
                return httpx.Response(404, json={"success": False})
            return httpx.Response(200, json={"success": True})

        match = re.fullmatch(r"/api/agents/([^/]+)", path)
        if match and request.method == "GET":
            if match.group(1) not in self.instances:
                return httpx.Response(404, json={"success": False})
            return httpx.Response(200, json={"success": True, "data": {"id": match.group(1)}})

        match = re.match(r"/agents/([^/]+)/([^/]+)(/.*)?$", path)
        if match:
            return self._protocol(request, match.group(1), match.group(2), match.group(3) or "")

        return httpx.Response(404, json={"error": "unknown route"})

    def _protocol(self, request: httpx.Request, internal_id: str, segment: str, sub_path: str) -> httpx.Response:
        if internal_id not in self.instances:
            return httpx.Response(404, json={"error": "agent not found"})

        if request.method == "POST" and request.content:
            body = json.loads(request.content)
            if body.get("method") == "message/send":
                return httpx.Response(
                    200,
                    json={
                        "jsonrpc": "2.0",
                        "id": body.get("id"),
                        "result": {"kind": "message", "role": "agent", "parts": [{"kind": "text", "text": self.reply}]},
                    },
                )

        if sub_path == "/.well-known/agent-card.json":
            return httpx.Response(
                200,
                json={
                    "name": "SellerAgent",
                    "url": f"{RUNTIME_URL}/agents/{internal_id}/{segment}",
                    "additionalInterfaces": [{"url": f"{RUNTIME_URL}/agents/{internal_id}/{segment}/jsonrpc"}],
                    "notes": f"/agents/{internal_id}/{segment}extra stays",
                },
            )

        if sub_path == "/stream":
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=b"data: one\n\ndata: two\n\n",
            )

        return httpx.Response(
            200,
            json={
                "instance": internal_id,
                "path": request.url.raw_path.decode("ascii"),
                "method": request.method,
                "body": request.content.decode("utf-8"),
            },
        )


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()
