"""Tests for API routes."""
import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from deepresearch.agents.job_runner import JobRunner
from deepresearch.api.deps import run_manager
from deepresearch.config import Settings
from deepresearch.main import app
from deepresearch.services.run_manager import RunManager


class InstantClient:
    async def submit(self, query: str):
        return {"id": "resp_1", "status": "queued"}

    async def retrieve(self, response_id: str):
        return {"id": response_id, "status": "completed", "output_text": "report body"}


async def _no_wait(seconds: float) -> None:
    await asyncio.sleep(0)


def _manager(client_factory) -> RunManager:
    return RunManager(
        client_factory,
        config=Settings(heartbeat_after_seconds=5.0),
        save_report=None,
        runner_factory=lambda c: JobRunner(c, poll_interval=0, sleep=_no_wait),
    )


def _unconfigured():
    raise RuntimeError("OPENAI_API_KEY is not configured")


@pytest.fixture
def client():
    manager = _manager(InstantClient)
    app.dependency_overrides[run_manager] = lambda: manager
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


OUTLINE = {
    "topic": "Ocean tides",
    "sections": [
        {"id": "s1", "title": "Lunar influence", "description": "How the moon drives tides"},
        {"id": "s2", "title": "Tidal energy"},
    ],
}


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "deepresearch"


def test_config_status_never_leaks_key(client):
    response = client.get("/api/config")
    assert response.status_code == 200
    data = response.json()
    assert data["openai"] in ("configured", "OPENAI_API_KEY not configured")
    assert data["jobMaxAttempts"] >= 1
    assert "openaiApiKey" not in data


def test_start_run_rejects_empty_outline(client):
    response = client.post("/api/runs", json={"topic": "Ocean tides", "sections": []})
    assert response.status_code == 400
    assert "at least one section" in response.json()["detail"]


def test_start_run_rejects_duplicate_section_ids(client):
    outline = {"topic": "Ocean tides", "sections": [{"id": "a", "title": "A"}, {"id": "a", "title": "B"}]}
    response = client.post("/api/runs", json=outline)
    assert response.status_code == 400


def test_start_run_without_research_client_is_unavailable():
    app.dependency_overrides[run_manager] = lambda: _manager(_unconfigured)
    try:
        with TestClient(app) as test_client:
            response = test_client.post("/api/runs", json=OUTLINE)
    finally:
        app.dependency_overrides.clear()
    assert response.status_code == 503
    assert "OPENAI_API_KEY" in response.json()["detail"]


def test_unknown_run_is_not_found(client):
    assert client.get("/api/runs/missing").status_code == 404
    assert client.delete("/api/runs/missing").status_code == 404
    assert client.get("/api/runs/missing/stream").status_code == 404


def test_run_streams_identity_keyed_events(client):
    response = client.post("/api/runs", json=OUTLINE)
    assert response.status_code == 200
    run_id = response.json()["runId"]

    stream = client.get(f"/api/runs/{run_id}/stream")
    assert stream.status_code == 200

    lines = stream.text.splitlines()
    events = [line.removeprefix("event: ") for line in lines if line.startswith("event: ")]
    ids = [line.removeprefix("id: ") for line in lines if line.startswith("id: ")]
    data = [json.loads(line.removeprefix("data: ")) for line in lines if line.startswith("data: ")]

    assert events[0] == "outline"
    assert ids[0] == f"outline:{run_id}"
    assert f"section:{run_id}:s1" in ids
    assert f"section:{run_id}:s2" in ids
    assert data[-1]["type"] == "run-status"
    assert data[-1]["phase"] == "complete"
    assert data[-1]["completedSections"] == 2
