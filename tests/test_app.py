import json

import pytest
from fastapi.testclient import TestClient

from chatcommerce.agent_directory import AgentDirectory
from chatcommerce.app import AppServices, create_app
from chatcommerce.completion import Completion
from chatcommerce.errors import FatalCompletionError
from chatcommerce.failure import ChannelRegistry, FailureBoundary
from chatcommerce.session_store import SessionStore

from conftest import RAW_PRODUCTS, FakeCompletionService, make_orchestrator


def _services(tmp_path, ledger, responses):
    catalog_dir = tmp_path / "catalogs"
    catalog_dir.mkdir()
    payload = {"agent": {"owner_id": "owner-1", "name": "Awa"}, "products": RAW_PRODUCTS}
    (catalog_dir / "shop-1.json").write_text(json.dumps(payload), encoding="utf-8")
    service = FakeCompletionService(responses)
    boundary = FailureBoundary(
        make_orchestrator(service),
        ChannelRegistry(),
        fallback_message="Un instant...",
        reporter=lambda error, tags=None: None,
    )
    services = AppServices(
        boundary=boundary,
        agents=AgentDirectory(catalog_dir),
        sessions=SessionStore(tmp_path / "sessions.json"),
        ledger=ledger,
        history_window=10,
    )
    return services, service


@pytest.fixture
def app_factory(tmp_path, ledger):
    def build(responses=None):
        services, service = _services(tmp_path, ledger, responses or [])
        return TestClient(create_app(services)), services, service

    return build


def test_health(app_factory):
    client, _, _ = app_factory()
    assert client.get("/api/health").json() == {"status": "ok"}


def test_turn_replies_and_persists_history(app_factory):
    client, services, service = app_factory([Completion(text="Bonjour !"), Completion(text="La pizza ?")])

    first = client.post("/api/turn", json={"agent_id": "shop-1", "message": "Salut"})
    assert first.status_code == 200
    body = first.json()
    assert body["reply_text"] == "Bonjour !"
    assert body["degraded"] is False

    session_id = body["session_id"]
    second = client.post("/api/turn", json={"agent_id": "shop-1", "message": "Une pizza", "session_id": session_id})
    assert second.json()["session_id"] == session_id

    contents = [message.content for message in service.requests[1].messages[1:]]
    assert contents == ["Salut", "Bonjour !", "Une pizza"]

    stored = client.get(f"/api/sessions/{session_id}").json()["messages"]
    assert [message["role"] for message in stored] == ["user", "assistant", "user", "assistant"]
    listed = client.get("/api/sessions", params={"agent_id": "shop-1"}).json()
    assert listed[0]["title"] == "Salut"


def test_unknown_agent_is_404(app_factory):
    client, _, _ = app_factory()
    response = client.post("/api/turn", json={"agent_id": "nobody", "message": "Salut"})
    assert response.status_code == 404


def test_pipeline_failure_returns_fallback(app_factory):
    client, _, _ = app_factory([FatalCompletionError("blocked", code="content_policy")])

    body = client.post("/api/turn", json={"agent_id": "shop-1", "message": "Salut"}).json()

    assert body["reply_text"] == "Un instant..."
    assert body["degraded"] is True


def test_integrity_issues_are_serialized(app_factory):
    client, _, _ = app_factory([Completion(text="Total: 20 000 000 FCFA")])

    body = client.post("/api/turn", json={"agent_id": "shop-1", "message": "Combien ?"}).json()

    assert body["integrity_issues"][0]["mentioned_price"] == 20000000
    assert body["integrity_issues"][0]["type"] == "price_hallucination"


def test_credit_top_up_and_balance(app_factory):
    client, _, _ = app_factory()

    assert client.get("/api/credits/owner-1").status_code == 404
    assert client.post("/api/credits/owner-1", json={"amount": 5}).json() == {"owner_id": "owner-1", "balance": 5}
    assert client.post("/api/credits/owner-1", json={"amount": 3}).json()["balance"] == 8
    assert client.get("/api/credits/owner-1").json()["balance"] == 8
    assert client.post("/api/credits/owner-1", json={"amount": 0}).status_code == 422
