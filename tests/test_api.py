"""
Tests for the HTTP API.

The application lifespan is skipped; the module globals are pointed at an
orchestrator wired to in-memory collaborators and a temporary database.
"""

import pytest
from fastapi.testclient import TestClient

from conftest import (
    WEBHOOK_SECRET,
    pull_request_payload,
    push_payload,
    wait_for,
    webhook_request,
)

from iac_pipeline import api
from iac_pipeline.core.orchestrator import PipelineOrchestrator
from iac_pipeline.db.base import get_db
from iac_pipeline.db.services import SqlExecutionRecorder
from iac_pipeline.deploy import InMemoryTarget
from iac_pipeline.triggers import TriggerListener


@pytest.fixture
def make_client(build_machine, session_factory, monkeypatch):
    orchestrators = []

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    def make(**machine_options):
        machine = build_machine(**machine_options)
        machine.recorder = SqlExecutionRecorder(session_factory)
        orchestrator = PipelineOrchestrator(machine, max_concurrent_executions=2)
        orchestrator.start()
        orchestrators.append(orchestrator)

        monkeypatch.setattr(api, "orchestrator", orchestrator)
        monkeypatch.setattr(api, "listener", TriggerListener(WEBHOOK_SECRET))
        api.app.dependency_overrides[get_db] = override_get_db
        return TestClient(api.app), orchestrator

    yield make
    for orchestrator in orchestrators:
        orchestrator.stop()
    api.app.dependency_overrides.clear()


def post_webhook(client, event, payload, secret=WEBHOOK_SECRET):
    headers, body = webhook_request(event, payload, secret)
    return client.post("/webhooks/scm", content=body, headers=headers)


class TestHealth:
    def test_healthz(self, make_client):
        client, _ = make_client()
        assert client.get("/healthz").json() == {"status": "ok"}

    def test_version(self, make_client):
        client, _ = make_client()
        assert "version" in client.get("/version").json()

    def test_status(self, make_client):
        client, _ = make_client()
        data = client.get("/status").json()
        assert data["orchestrator"]["is_running"]
        assert data["orchestrator"]["environment"] == "production"

    def test_not_initialized(self, monkeypatch):
        monkeypatch.setattr(api, "orchestrator", None)
        monkeypatch.setattr(api, "listener", None)
        client = TestClient(api.app)

        assert client.get("/status").status_code == 503
        assert client.post("/webhooks/scm", content=b"{}").status_code == 503


class TestWebhook:
    def test_push_starts_full_execution(self, make_client, target):
        client, orchestrator = make_client()
        response = post_webhook(client, "push", push_payload(after="b" * 40))

        assert response.status_code == 202
        body = response.json()
        assert body["kind"] == "full"
        assert orchestrator.wait_all(5)

        detail = client.get(f"/executions/{body['execution_id']}").json()
        assert detail["state"] == "succeeded"
        assert detail["trigger"]["source"]["commit_sha"] == "b" * 40
        assert detail["verdicts"]["test"]["status"] == "pass"
        assert detail["audit_log"][0]["action"] == "created"
        assert target.apply_count == 1

    def test_pull_request_starts_pre_merge(self, make_client, target):
        client, orchestrator = make_client()
        response = post_webhook(client, "pull_request", pull_request_payload())

        assert response.status_code == 202
        assert response.json()["kind"] == "pre_merge"
        orchestrator.wait_all(5)
        assert target.apply_count == 0

    def test_bad_signature_rejected_without_record(self, make_client):
        """Forged deliveries get 401 and leave no execution behind."""
        client, _ = make_client()
        response = post_webhook(client, "push", push_payload(), secret="forged")

        assert response.status_code == 401
        assert response.json()["detail"]["error"]["code"] == "TRIGGER_AUTHENTICATION_FAILED"
        assert client.get("/executions").json()["count"] == 0

    def test_malformed_event(self, make_client):
        client, _ = make_client()
        payload = push_payload()
        del payload["repository"]
        response = post_webhook(client, "push", payload)

        assert response.status_code == 400
        assert response.json()["detail"]["error"]["code"] == "MALFORMED_TRIGGER"

    def test_ignored_events(self, make_client):
        client, _ = make_client()
        ping = post_webhook(client, "ping", {"zen": "Practicality beats purity."})
        branch = post_webhook(client, "push", push_payload(branch="feature/x"))

        assert ping.status_code == 200
        assert ping.json() == {"status": "ignored", "reason": "ping"}
        assert branch.json()["status"] == "ignored"
        assert client.get("/executions").json()["count"] == 0


class TestExecutions:
    def test_list_and_filter(self, make_client):
        client, orchestrator = make_client()
        post_webhook(client, "push", push_payload(after="1" * 40))
        post_webhook(client, "push", push_payload(after="2" * 40))
        orchestrator.wait_all(5)

        assert client.get("/executions").json()["count"] == 2
        filtered = client.get("/executions", params={"commit_sha": "2" * 40}).json()
        assert [e["trigger"]["source"]["commit_sha"] for e in filtered["executions"]] == ["2" * 40]
        assert client.get("/executions", params={"outcome": "failed"}).json()["count"] == 0

    def test_invalid_filters(self, make_client):
        client, _ = make_client()
        assert client.get("/executions", params={"outcome": "exploded"}).status_code == 400
        assert client.get("/executions", params={"state": "paused"}).status_code == 400
        assert client.get("/executions", params={"limit": 0}).status_code == 400

    def test_unknown_execution(self, make_client):
        client, _ = make_client()
        assert client.get("/executions/missing").status_code == 404
        assert client.post("/executions/missing/cancel").status_code == 404
        assert client.post("/executions/missing/retrigger").status_code == 404

    def test_cancel_in_flight(self, make_client):
        target = InMemoryTarget("production", hang=True)
        client, orchestrator = make_client(deploy_target=target)
        execution_id = post_webhook(client, "push", push_payload()).json()["execution_id"]
        assert wait_for(lambda: target.apply_count == 1)

        response = client.post(f"/executions/{execution_id}/cancel")
        assert response.status_code == 202
        assert orchestrator.wait_all(5)

        detail = client.get(f"/executions/{execution_id}").json()
        assert detail["state"] == "cancelled"
        assert "cancel_requested" in [e["action"] for e in detail["audit_log"]]

    def test_cancel_finished_conflicts(self, make_client):
        client, orchestrator = make_client()
        execution_id = post_webhook(client, "push", push_payload()).json()["execution_id"]
        orchestrator.wait_all(5)

        response = client.post(f"/executions/{execution_id}/cancel")
        assert response.status_code == 409
        assert response.json()["detail"]["error"]["code"] == "EXECUTION_IMMUTABLE"

    def test_retrigger_finished(self, make_client, target):
        client, orchestrator = make_client()
        original = post_webhook(client, "push", push_payload(after="e" * 40)).json()
        orchestrator.wait_all(5)

        response = client.post(f"/executions/{original['execution_id']}/retrigger")
        assert response.status_code == 202
        rerun_id = response.json()["execution_id"]
        orchestrator.wait_all(5)

        rerun = client.get(f"/executions/{rerun_id}").json()
        assert rerun["retrigger_of"] == original["execution_id"]
        assert rerun["trigger"]["source"]["commit_sha"] == "e" * 40
        assert rerun["state"] == "succeeded"
        assert target.apply_count == 2

        history = client.get(f"/executions/{original['execution_id']}").json()["audit_log"]
        assert history[-1]["action"] == "retriggered"

    def test_retrigger_in_flight_conflicts(self, make_client):
        target = InMemoryTarget("production", hang=True)
        client, orchestrator = make_client(deploy_target=target)
        execution_id = post_webhook(client, "push", push_payload()).json()["execution_id"]
        assert wait_for(lambda: target.apply_count == 1)

        response = client.post(f"/executions/{execution_id}/retrigger")
        assert response.status_code == 409
        orchestrator.cancel(execution_id)
        orchestrator.wait_all(5)
