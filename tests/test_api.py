"""
tests/test_api.py

HTTP surface of the session and data source routers.

Services are built against the per-test SQLite database and injected with
FastAPI dependency overrides; the synthesis loop uses the mock adapter
and a static executor so background dispatch completes inside the request.

Coverage
--------
- Session start returns 202 and the background dispatch runs to completion
- Request validation and not-found mapping
- Server-sent event stream of a finished session
- Approval activates a version on a new data source
- Data source CRUD, version store conflicts, dry runs, improve and run triggers
"""

from __future__ import annotations

import uuid

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api.routers import agent_sessions_router, data_sources_router
from app.config import AgentSettings
from app.scraping.markup import StaticMarkupFetcher
from app.scraping.types import ExecutionResult
from app.services.agent_orchestrator import AgentOrchestrator
from app.services.agent_session_service import AgentSessionService, get_agent_session_service
from app.services.production_run_service import get_production_run_service
from app.services.scraper_version_service import ScraperVersionService, get_scraper_version_service
from db.models.agent_session import AgentSessionStatus
from db.repositories import AgentSessionRepository
from db.session import get_db
from llm_synthesis.adapter import MockLLMAdapter

URL = "https://venue.example.com/calendar"
PROGRAM = "def scrape_events(page, timezone):\n    return page.json_ld('Event')\n"
COMPLETE_EVENT = {
    "title": "Jazz Night",
    "starts_at": "2026-12-06T01:00:00+00:00",
    "source_url": "https://venue.example.com/events/jazz-night",
}


class StaticExecutor:
    def __init__(self, result: ExecutionResult) -> None:
        self.result = result

    def execute(self, code, url, timezone="America/New_York", timeout_ms=None, *, kind="event-scraper"):
        return self.result


class RecordingRunService:
    def __init__(self) -> None:
        self.runs: list[uuid.UUID] = []

    def run_source(self, data_source_id: uuid.UUID) -> None:
        self.runs.append(data_source_id)


@pytest.fixture()
def run_service() -> RecordingRunService:
    return RecordingRunService()


@pytest.fixture()
def client(session_factory, run_service):
    settings = AgentSettings(llm_max_retries=0, stream_poll_seconds=0.0)
    executor = StaticExecutor(ExecutionResult(records=[COMPLETE_EVENT] * 2, success=True, duration_ms=5))
    orchestrator = AgentOrchestrator(
        session_factory=session_factory,
        adapter_factory=lambda model: MockLLMAdapter(),
        executor=executor,
        fetcher_factory=lambda: StaticMarkupFetcher({}, default="<html><body></body></html>"),
        settings=settings,
        llm_retry_backoff_seconds=0,
    )
    session_service = AgentSessionService(
        session_factory=session_factory,
        orchestrator=orchestrator,
        settings=settings,
    )
    version_service = ScraperVersionService(executor=executor, settings=settings)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app = FastAPI()
    app.include_router(agent_sessions_router)
    app.include_router(data_sources_router)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_agent_session_service] = lambda: session_service
    app.dependency_overrides[get_scraper_version_service] = lambda: version_service
    app.dependency_overrides[get_production_run_service] = lambda: run_service

    with TestClient(app) as test_client:
        yield test_client


def _create_source(client: TestClient, name: str = "Blue Room") -> str:
    response = client.post(
        "/data-sources",
        json={"name": name, "url": "https://blueroom.example.com/calendar", "timezone": "America/Chicago"},
    )
    assert response.status_code == 201
    return response.json()["data_source_id"]


class TestAgentSessionEndpoints:
    def test_start_runs_session_in_background(self, client: TestClient) -> None:
        response = client.post("/agent/sessions", json={"url": URL, "max_iterations": 2})

        assert response.status_code == 202
        body = response.json()
        assert body["created"] is True
        assert body["status"] == AgentSessionStatus.PENDING

        status = client.get(f"/agent/sessions/{body['session_id']}", params={"include_attempts": True})
        assert status.status_code == 200
        payload = status.json()
        assert payload["status"] == AgentSessionStatus.SUCCESS
        assert payload["current_iteration"] == 1
        assert payload["best_score"] >= 0.6
        assert len(payload["attempts"]) == 1
        assert payload["thinking_steps"][0]["type"] == "analysis"

    def test_start_requires_a_target(self, client: TestClient) -> None:
        response = client.post("/agent/sessions", json={"kind": "event-scraper"})
        assert response.status_code == 422

    def test_start_with_unknown_source(self, client: TestClient) -> None:
        response = client.post("/agent/sessions", json={"data_source_id": str(uuid.uuid4())})
        assert response.status_code == 404

    def test_unknown_session(self, client: TestClient) -> None:
        assert client.get(f"/agent/sessions/{uuid.uuid4()}").status_code == 404
        assert client.get(f"/agent/sessions/{uuid.uuid4()}/stream").status_code == 404

    def test_stream_of_finished_session(self, client: TestClient) -> None:
        session_id = client.post("/agent/sessions", json={"url": URL}).json()["session_id"]

        response = client.get(f"/agent/sessions/{session_id}/stream")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert "event: thinking\n" in response.text
        assert response.text.count("event: complete\n") == 1
        assert response.text.rstrip().endswith("}")

    def test_approve_creates_source_and_version(self, client: TestClient) -> None:
        session_id = client.post("/agent/sessions", json={"url": URL}).json()["session_id"]

        response = client.post(f"/agent/sessions/{session_id}/approve", json={"name": "Venue", "approved_by": "ops"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == AgentSessionStatus.APPROVED
        assert body["version_number"] == 1

        source = client.get(f"/data-sources/{body['data_source_id']}").json()
        assert source["name"] == "Venue"
        assert source["active_version_number"] == 1

    def test_approve_requires_success(self, client: TestClient, session_factory) -> None:
        with session_factory() as db, db.begin():
            pending = AgentSessionRepository(db).create_session(
                url=URL, kind="event-scraper", max_iterations=1, timezone="UTC"
            )
        response = client.post(f"/agent/sessions/{pending.id}/approve")
        assert response.status_code == 409

    def test_cancel(self, client: TestClient, session_factory) -> None:
        with session_factory() as db, db.begin():
            pending = AgentSessionRepository(db).create_session(
                url=URL, kind="event-scraper", max_iterations=1, timezone="UTC"
            )
        response = client.post(f"/agent/sessions/{pending.id}/cancel")
        assert response.status_code == 200
        assert response.json()["status"] == AgentSessionStatus.FAILED


class TestDataSourceEndpoints:
    def test_create_list_and_get(self, client: TestClient) -> None:
        source_id = _create_source(client)

        listed = client.get("/data-sources").json()["sources"]
        assert [source["data_source_id"] for source in listed] == [source_id]
        assert listed[0]["consecutive_failures"] == 0
        assert client.get(f"/data-sources/{uuid.uuid4()}").status_code == 404

    def test_version_store(self, client: TestClient) -> None:
        source_id = _create_source(client)

        created = client.post(f"/data-sources/{source_id}/versions", json={"code": PROGRAM, "set_active": True})
        assert created.status_code == 201
        assert created.json()["version_number"] == 1
        assert created.json()["provenance"] == "manual"

        duplicate = client.post(f"/data-sources/{source_id}/versions", json={"code": PROGRAM})
        assert duplicate.status_code == 409
        assert duplicate.json()["detail"]["existing_version_number"] == 1

        invalid = client.post(f"/data-sources/{source_id}/versions", json={"code": "import os\n"})
        assert invalid.status_code == 422

        listed = client.get(f"/data-sources/{source_id}/versions", params={"include_code": True}).json()
        assert [version["code"] for version in listed["versions"]] == [PROGRAM]

    def test_activate_unknown_version(self, client: TestClient) -> None:
        source_id = _create_source(client)
        response = client.post(f"/data-sources/{source_id}/versions/{uuid.uuid4()}/activate")
        assert response.status_code == 404

    def test_dry_run(self, client: TestClient) -> None:
        source_id = _create_source(client)

        response = client.post(f"/data-sources/{source_id}/test", json={"code": PROGRAM})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["record_count"] == 2
        assert body["completeness"] == pytest.approx(0.7)
        assert body["version_id"] is None
        assert len(body["samples"]) == 2

    def test_improve_queues_session(self, client: TestClient) -> None:
        source_id = _create_source(client)
        client.post(f"/data-sources/{source_id}/versions", json={"code": PROGRAM, "set_active": True})

        response = client.post(f"/data-sources/{source_id}/improve", json={"feedback": "Missing descriptions"})

        assert response.status_code == 202
        assert response.json()["created"] is True

    def test_run_is_queued(self, client: TestClient, run_service: RecordingRunService) -> None:
        source_id = _create_source(client)

        response = client.post(f"/data-sources/{source_id}/run")

        assert response.status_code == 202
        assert [str(item) for item in run_service.runs] == [source_id]
        assert client.post(f"/data-sources/{uuid.uuid4()}/run").status_code == 404
