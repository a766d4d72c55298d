"""Unit tests for the REST adapter."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from flowfi_automation.engine.config import EngineSettings
from flowfi_automation.engine.runtime import AutomationEngine
from flowfi_automation.engine.store import JsonEntityStore
from flowfi_automation.governance.models import Dao, DaoMember, MemberRole
from flowfi_automation.server.app import create_app
from flowfi_automation.server.config import ServerSettings

WORKFLOW_BODY = {
    "owner": "0xowner",
    "action": "stake",
    "trigger": {"kind": "scheduled", "frequency": "daily", "time_of_day": "09:00"},
    "amount": "5",
}


def _engine(
    tmp_path: Path, store: JsonEntityStore, notifier, clock, jobs, ledger=None
) -> AutomationEngine:
    settings = EngineSettings(_env_file=None, ENGINE_STATE_PATH=tmp_path / "state")
    return AutomationEngine(
        settings=settings,
        store=store,
        notifier=notifier,
        ledger=ledger,
        clock=clock,
        scheduler=jobs,
    )


@pytest.fixture
def engine(
    tmp_path: Path, store: JsonEntityStore, ledger, notifier, clock, jobs
) -> Iterator[AutomationEngine]:
    eng = _engine(tmp_path, store, notifier, clock, jobs, ledger=ledger)
    yield eng
    eng.close()


@pytest.fixture
def client(engine: AutomationEngine) -> TestClient:
    return TestClient(create_app(engine, settings=ServerSettings(_env_file=None)))


def test_health_and_stats(client: TestClient) -> None:
    assert client.get("/api/health").json() == {"status": "ok"}

    stats = client.get("/api/stats").json()
    assert stats["running"] is False
    assert stats["armed_triggers"] == 0


def test_create_and_fetch_workflow(client: TestClient) -> None:
    created = client.post("/api/workflows", json=WORKFLOW_BODY)

    assert created.status_code == 201
    body = created.json()
    assert body["kind"] == "workflow"
    assert body["status"] == "active"
    assert body["trigger_kind"] == "scheduled"
    assert body["max_retries"] == 3

    fetched = client.get(f"/api/automations/{body['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["id"] == body["id"]


def test_unknown_automation_is_404(client: TestClient) -> None:
    assert client.get("/api/automations/wf_missing").status_code == 404


def test_invalid_input_is_422(client: TestClient) -> None:
    teleport = {**WORKFLOW_BODY, "action": "teleport"}
    assert client.post("/api/workflows", json=teleport).status_code == 422
    mismatch = {**WORKFLOW_BODY, "frequency": "weekly"}
    assert client.post("/api/workflows", json=mismatch).status_code == 422
    assert client.post("/api/workflows", json={"owner": "0xowner"}).status_code == 422
    subscription = {"owner": "0xpayer", "recipient": "0xmerchant", "amount_due": 0}
    assert client.post("/api/subscriptions", json=subscription).status_code == 422


def test_lifecycle_endpoints(client: TestClient) -> None:
    entity_id = client.post("/api/workflows", json=WORKFLOW_BODY).json()["id"]

    paused = client.post(f"/api/automations/{entity_id}/pause", json={"owner": "0xowner"})
    assert paused.json()["status"] == "paused"
    assert paused.json()["next_due_at"] is None

    assert client.post(f"/api/automations/{entity_id}/resume").json()["status"] == "active"
    assert client.post(f"/api/automations/{entity_id}/resume").status_code == 409

    wrong_owner = client.post(f"/api/automations/{entity_id}/cancel", json={"owner": "0xother"})
    assert wrong_owner.status_code == 404


def test_trigger_endpoint_executes(client: TestClient, ledger) -> None:
    body = {"owner": "0xpayer", "recipient": "0xmerchant", "amount_due": 12.5}
    entity_id = client.post("/api/subscriptions", json=body).json()["id"]

    response = client.post(f"/api/automations/{entity_id}/trigger")

    assert response.status_code == 200
    result = response.json()
    assert result["ok"] is True
    assert result["reference"] == "tx-1"
    assert ledger.submissions[0][1]["subscription_id"] == entity_id


def test_execution_without_ledger_is_503(
    tmp_path: Path, store: JsonEntityStore, notifier, clock, jobs
) -> None:
    client = TestClient(
        create_app(
            _engine(tmp_path, store, notifier, clock, jobs),
            settings=ServerSettings(_env_file=None),
        )
    )
    entity_id = client.post("/api/workflows", json=WORKFLOW_BODY).json()["id"]

    assert client.post(f"/api/automations/{entity_id}/trigger").status_code == 503
    assert client.post("/api/payments/process").status_code == 503


def test_events_fire_listeners_only_while_running(
    client: TestClient, engine: AutomationEngine
) -> None:
    body = {**WORKFLOW_BODY, "trigger": {"kind": "event", "event_type": "payday"}}
    entity_id = client.post("/api/workflows", json=body).json()["id"]

    assert client.post("/api/events/payday").json() == {"event_type": "payday", "fired": []}

    engine.start(sweep=False)
    assert client.post("/api/events/payday").json()["fired"] == [entity_id]
    assert [t["entity_id"] for t in client.get("/api/triggers").json()] == [entity_id]


def test_proposal_endpoints(
    client: TestClient, store: JsonEntityStore, engine: AutomationEngine
) -> None:
    store.upsert_dao(
        Dao(
            id="dao_1",
            name="Treasury",
            members=[
                DaoMember(address="alice", voting_power=60, role=MemberRole.ADMIN),
                DaoMember(address="bob", voting_power=40),
            ],
        )
    )
    proposal = engine.proposals.create_proposal(
        "dao_1", proposer="alice", title="Adopt template", type="workflow_template",
        data={"template_id": "tpl_1"},
    )

    outsider = client.post(
        f"/api/proposals/{proposal.id}/votes", json={"voter": "mallory", "choice": "yes"}
    )
    assert outsider.status_code == 403

    votes_url = f"/api/proposals/{proposal.id}/votes"
    voted = client.post(votes_url, json={"voter": "alice", "choice": "yes"})
    assert voted.status_code == 200
    assert voted.json()["status"] == "executed"
    assert voted.json()["yes"] == 60

    again = client.post(votes_url, json={"voter": "alice", "choice": "no"})
    assert again.status_code == 409

    assert client.post(f"/api/proposals/{proposal.id}/resolve").json()["status"] == "executed"
    assert client.get("/api/proposals/prop_missing").status_code == 404
