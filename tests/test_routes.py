"""HTTP tests for the control surface and the single-issue endpoints."""

import time
from contextlib import contextmanager

import pytest
from fastapi.testclient import TestClient

from api.app.batch import BatchDispatcher, PoolConfig
from api.app.main import app

from .support import RUN_KEY, FakeGateway, seed_issues


class StaticClassifier:
    provider = "openai"
    model = "test-model"

    async def classify(self, title, body):
        return {"chat": True, "need_manual_check": False}


@pytest.fixture
def gateway():
    return FakeGateway(delay=0.01)


@contextmanager
def open_client(gateway):
    with TestClient(app) as test_client:
        app.state.dispatcher = BatchDispatcher(
            gateway,
            config=PoolConfig(concurrency=2, max_retries=2, retry_delay=0.001, request_delay=0.0),
            dedup_before_enqueue=True,
        )
        app.state.classifier = StaticClassifier()
        yield test_client


@pytest.fixture
def client(gateway):
    with open_client(gateway) as test_client:
        yield test_client


def _wait_for_state(client, state, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/batch-analysis/{RUN_KEY}").json()
        if body["status"] == state:
            return body
        time.sleep(0.02)
    raise AssertionError(f"run never reached {state}: {body}")


class TestBatchAnalysisRoutes:
    """Tests for POST /batch-analysis and GET /batch-analysis/{run_key}."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_status_of_unknown_run(self, client):
        """An unknown run reports not_started."""
        response = client.post("/batch-analysis", json={"run_key": RUN_KEY, "action": "status"})
        assert response.status_code == 200
        assert response.json()["status"] == "not_started"

    def test_start_and_complete(self, gateway):
        """start queues every issue and the run completes in the background."""
        ids = seed_issues(4)
        with open_client(gateway) as client:
            response = client.post("/batch-analysis", json={"repo": RUN_KEY, "action": "start"})
            assert response.status_code == 200
            body = response.json()
            assert body["totalCount"] == 4
            assert body["queueLength"] == 4
            final = _wait_for_state(client, "completed")
        assert final["processedCount"] == 4
        assert final["successCount"] == 4
        assert final["remainingCount"] == 0
        assert sorted(gateway.classify_calls) == sorted(ids)

    def test_second_start_conflicts(self, gateway):
        """Starting a running run answers 409."""
        seed_issues(20)
        with open_client(gateway) as client:
            first = client.post("/batch-analysis", json={"run_key": RUN_KEY, "action": "start"})
            second = client.post("/batch-analysis", json={"run_key": RUN_KEY, "action": "start"})
            client.post("/batch-analysis", json={"run_key": RUN_KEY, "action": "cancel"})
        assert first.status_code == 200
        assert second.status_code == 409

    def test_pause_unknown_run_is_404(self, client):
        response = client.post("/batch-analysis", json={"run_key": RUN_KEY, "action": "pause"})
        assert response.status_code == 404

    def test_resume_running_run_is_409(self, gateway):
        seed_issues(20)
        with open_client(gateway) as client:
            client.post("/batch-analysis", json={"run_key": RUN_KEY, "action": "start"})
            response = client.post("/batch-analysis", json={"run_key": RUN_KEY, "action": "resume"})
            client.post("/batch-analysis", json={"run_key": RUN_KEY, "action": "cancel"})
        assert response.status_code == 409
        assert "Cannot resume" in response.json()["detail"]

    def test_unknown_action_is_400(self, client):
        response = client.post("/batch-analysis", json={"run_key": RUN_KEY, "action": "explode"})
        assert response.status_code == 400

    def test_missing_run_key_is_400(self, client):
        response = client.post("/batch-analysis", json={"action": "start"})
        assert response.status_code == 400

    def test_mutating_actions_need_admin_token(self, gateway, monkeypatch):
        """With ADMIN_TOKEN set, start needs the header but status does not."""
        monkeypatch.setenv("ADMIN_TOKEN", "s3cret")
        seed_issues(1)
        with open_client(gateway) as client:
            denied = client.post("/batch-analysis", json={"run_key": RUN_KEY, "action": "start"})
            status = client.post("/batch-analysis", json={"run_key": RUN_KEY, "action": "status"})
            allowed = client.post(
                "/batch-analysis",
                json={"run_key": RUN_KEY, "action": "start"},
                headers={"X-Admin-Token": "s3cret"},
            )
            _wait_for_state(client, "completed")
        assert denied.status_code == 401
        assert status.status_code == 200
        assert allowed.status_code == 200


class TestIssueAnalysisRoutes:
    """Tests for classifying and saving a single issue."""

    def test_issue_analysis(self, client):
        response = client.post("/issue-analysis", json={"issue_id": 5, "title": "Chat freezes", "body": ""})
        assert response.status_code == 200
        body = response.json()
        assert body["issue_id"] == 5
        assert body["labels"]["chat"] is True
        assert body["model"] == "test-model"

    def test_save_creates_then_updates(self, client):
        """Saving the same issue twice updates the existing row."""
        payload = {"issue_id": 77, "is_pull_request": "true", "analysis": {"Chat": "true", "version": "false"}}
        first = client.post("/issue-analysis/save", json=payload)
        second = client.post("/issue-analysis/save", json=payload)
        assert first.status_code == 200
        assert first.json()["created"] is True
        assert second.json()["created"] is False
        assert first.json()["labels"]["chat"] is True
        assert first.json()["labels"]["version"] is None

    def test_save_requires_issue_id(self, client):
        response = client.post("/issue-analysis/save", json={"analysis": {}})
        assert response.status_code == 422

    def test_label_schema(self, client):
        response = client.get("/labels")
        assert response.status_code == 200
        keys = [label["key"] for label in response.json()["labels"]]
        assert "need_manual_check" in keys


class TestSettingsRoutes:
    """Tests for runtime settings overrides."""

    def test_patch_overrides_and_reset(self, client):
        response = client.patch("/settings", json={"batch_concurrency": 4, "ai_model": "other-model"})
        assert response.status_code == 200
        assert response.json()["batch_concurrency"] == 4
        assert response.json()["ai_model"] == "other-model"

        reset = client.patch("/settings", json={"batch_concurrency": None})
        assert reset.json()["batch_concurrency"] == 10
        assert reset.json()["ai_model"] == "other-model"

    def test_patch_without_fields_is_400(self, client):
        assert client.patch("/settings", json={}).status_code == 400
