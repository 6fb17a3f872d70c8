"""
tests/test_agent_orchestrator.py

The synthesis loop against scripted collaborators.

The model, the executor and the page fetcher are replaced with fakes so
each test controls exactly what every iteration sees. The database is
real (SQLite), which exercises the commit-per-step progress writes.

Coverage
--------
- Success on the first iteration that meets the threshold
- Validation rejections consume an iteration and feed the next prompt
- Budget exhaustion fails the session with exactly N attempts
- Model failures after bounded retries are recorded as llm_error attempts
- Best score and extracted snapshot only move upward
- Cancelled sessions stop without further writes
- Improve sessions store their result as an inactive version
- An improve result identical to a stored version approves that version
"""

from __future__ import annotations

import uuid

import pytest

from app.config import AgentSettings
from app.failure_codes import FailureType
from app.scraping.markup import StaticMarkupFetcher
from app.scraping.types import ExecutionResult
from app.services.agent_orchestrator import AgentOrchestrator
from app.services.agent_session_service import AgentSessionService
from db.models.agent_session import AgentAttemptStatus, AgentSessionMode, AgentSessionStatus
from db.repositories import AgentSessionRepository, DataSourceRepository, ScraperVersionRepository
from llm_synthesis.adapter import BaseLLMAdapter

URL = "https://venue.example.com/calendar"
PAGE = (
    "<html><body><main>"
    '<div class="event"><h2>Jazz Night</h2><a href="/events/jazz-night">More</a></div>'
    "</main></body></html>"
)
DETAIL_PAGE = "<html><body><h1>Jazz Night</h1><p>Doors at 7</p></body></html>"

GOOD_PROGRAM = "def scrape_events(page, timezone):\n    return page.json_ld('Event')\n"
OTHER_PROGRAM = "def scrape_events(page, timezone):\n    return list(page.json_ld('Event'))\n"
BAD_PROGRAM = "import os\n\ndef scrape_events(page, timezone):\n    return os.listdir('.')\n"

COMPLETE_EVENT = {
    "title": "Jazz Night",
    "starts_at": "2026-12-06T01:00:00+00:00",
    "source_url": "https://venue.example.com/events/jazz-night",
    "description": "Quartet",
}
TITLE_ONLY_EVENT = {"title": "Jazz Night"}


def _fenced(code: str) -> str:
    return f"```python\n{code}```"


class ScriptedAdapter(BaseLLMAdapter):
    def __init__(self, responses) -> None:
        self.responses = list(responses)
        self.prompts: list[str] = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class ScriptedExecutor:
    def __init__(self, results) -> None:
        self.results = list(results)
        self.codes: list[str] = []

    def execute(self, code, url, timezone="America/New_York", timeout_ms=None, *, kind="event-scraper"):
        self.codes.append(code)
        return self.results.pop(0)


def _settings(**overrides) -> AgentSettings:
    return AgentSettings(**{"llm_max_retries": 0, **overrides})


def _build(session_factory, adapter, executor, settings=None) -> AgentOrchestrator:
    return AgentOrchestrator(
        session_factory=session_factory,
        adapter_factory=lambda model: adapter,
        executor=executor,
        fetcher_factory=lambda: StaticMarkupFetcher({URL: PAGE}, default=DETAIL_PAGE),
        settings=settings or _settings(),
        llm_retry_backoff_seconds=0,
    )


def _claimed_session(session_factory, *, max_iterations: int, **kwargs) -> uuid.UUID:
    with session_factory() as db, db.begin():
        repository = AgentSessionRepository(db)
        agent_session = repository.create_session(
            url=kwargs.pop("url", URL),
            kind="event-scraper",
            max_iterations=max_iterations,
            timezone="America/New_York",
            **kwargs,
        )
        assert repository.claim(agent_session.id)
        return agent_session.id


def _load(session_factory, session_id):
    with session_factory() as db:
        repository = AgentSessionRepository(db)
        return repository.require_session(session_id), repository.list_attempts(session_id)


class TestSynthesisLoop:
    def test_success_on_first_iteration(self, session_factory) -> None:
        adapter = ScriptedAdapter([_fenced(GOOD_PROGRAM)])
        executor = ScriptedExecutor([ExecutionResult(records=[COMPLETE_EVENT] * 3, success=True)])
        session_id = _claimed_session(session_factory, max_iterations=3)

        _build(session_factory, adapter, executor).run_session(session_id)

        agent_session, attempts = _load(session_factory, session_id)
        assert agent_session.status == AgentSessionStatus.SUCCESS
        assert agent_session.current_iteration == 1
        assert agent_session.best_code == GOOD_PROGRAM
        assert agent_session.best_score >= 0.6
        assert agent_session.extracted_data["record_count"] == 3
        assert len(agent_session.extracted_data["events"]) == 3
        assert [attempt.status for attempt in attempts] == [AgentAttemptStatus.SUCCESS]

        step_types = [step["type"] for step in agent_session.thinking_steps]
        assert step_types[0] == "analysis"
        assert step_types[-1] == "success"
        assert "Jazz Night" in adapter.prompts[0]

    def test_validation_rejection_consumes_an_iteration(self, session_factory) -> None:
        adapter = ScriptedAdapter([_fenced(BAD_PROGRAM), _fenced(GOOD_PROGRAM)])
        executor = ScriptedExecutor([ExecutionResult(records=[COMPLETE_EVENT], success=True)])
        session_id = _claimed_session(session_factory, max_iterations=2)

        _build(session_factory, adapter, executor).run_session(session_id)

        agent_session, attempts = _load(session_factory, session_id)
        assert agent_session.status == AgentSessionStatus.SUCCESS
        assert [attempt.status for attempt in attempts] == [AgentAttemptStatus.INVALID, AgentAttemptStatus.SUCCESS]
        assert attempts[0].failure_type == FailureType.VALIDATION
        assert executor.codes == [GOOD_PROGRAM]
        # The rejection reason is fed into the next prompt.
        assert "Import of 'os'" in adapter.prompts[1]

    def test_budget_exhaustion_fails_with_one_attempt_per_iteration(self, session_factory) -> None:
        adapter = ScriptedAdapter([_fenced(GOOD_PROGRAM)])
        executor = ScriptedExecutor([ExecutionResult(records=[TITLE_ONLY_EVENT], success=True)])
        session_id = _claimed_session(session_factory, max_iterations=1)

        _build(session_factory, adapter, executor).run_session(session_id)

        agent_session, attempts = _load(session_factory, session_id)
        assert agent_session.status == AgentSessionStatus.FAILED
        assert agent_session.error_message.startswith(
            "Max iterations exhausted without meeting completeness threshold 0.60"
        )
        assert len(attempts) == 1
        assert agent_session.best_code == GOOD_PROGRAM
        assert agent_session.best_score == pytest.approx(0.2333, abs=1e-4)

    def test_best_score_only_improves(self, session_factory) -> None:
        adapter = ScriptedAdapter([_fenced(GOOD_PROGRAM), _fenced(OTHER_PROGRAM), _fenced(BAD_PROGRAM)])
        executor = ScriptedExecutor(
            [
                ExecutionResult(records=[{**TITLE_ONLY_EVENT, "source_url": "https://venue.example.com/e"}], success=True),
                ExecutionResult(records=[TITLE_ONLY_EVENT], success=True),
            ]
        )
        session_id = _claimed_session(session_factory, max_iterations=3)

        _build(session_factory, adapter, executor).run_session(session_id)

        agent_session, attempts = _load(session_factory, session_id)
        assert agent_session.status == AgentSessionStatus.FAILED
        assert len(attempts) == 3
        assert agent_session.best_code == GOOD_PROGRAM
        assert agent_session.best_score == pytest.approx(0.4667, abs=1e-4)

    def test_execution_failure_is_recorded(self, session_factory) -> None:
        adapter = ScriptedAdapter([_fenced(GOOD_PROGRAM)])
        executor = ScriptedExecutor(
            [ExecutionResult(success=False, failure_type=FailureType.TIMEOUT, errors=["Execution timed out after 10 ms"])]
        )
        session_id = _claimed_session(session_factory, max_iterations=1)

        _build(session_factory, adapter, executor).run_session(session_id)

        agent_session, attempts = _load(session_factory, session_id)
        assert attempts[0].status == AgentAttemptStatus.ERROR
        assert attempts[0].failure_type == FailureType.TIMEOUT
        assert agent_session.best_code is None
        assert "last error: Execution timed out" in agent_session.error_message

    def test_model_failure_is_an_llm_error_attempt(self, session_factory) -> None:
        adapter = ScriptedAdapter([RuntimeError("upstream 503"), RuntimeError("upstream 503")])
        executor = ScriptedExecutor([])
        session_id = _claimed_session(session_factory, max_iterations=1)

        _build(session_factory, adapter, executor, _settings(llm_max_retries=1)).run_session(session_id)

        agent_session, attempts = _load(session_factory, session_id)
        assert agent_session.status == AgentSessionStatus.FAILED
        assert [attempt.status for attempt in attempts] == [AgentAttemptStatus.LLM_ERROR]
        assert len(attempts[0].errors) == 2
        assert len(adapter.prompts) == 2
        assert executor.codes == []
        assert "Code generation failed" in agent_session.error_message


class TestSessionState:
    def test_non_running_session_is_skipped(self, session_factory) -> None:
        with session_factory() as db, db.begin():
            pending = AgentSessionRepository(db).create_session(
                url=URL, kind="event-scraper", max_iterations=1, timezone="UTC"
            )
        adapter = ScriptedAdapter([])

        _build(session_factory, adapter, ScriptedExecutor([])).run_session(pending.id)

        agent_session, attempts = _load(session_factory, pending.id)
        assert agent_session.status == AgentSessionStatus.PENDING
        assert attempts == []
        assert adapter.prompts == []

    def test_cancelled_mid_run_stops_the_loop(self, session_factory) -> None:
        session_id = _claimed_session(session_factory, max_iterations=3)

        class CancellingExecutor(ScriptedExecutor):
            def execute(self, code, url, timezone="America/New_York", timeout_ms=None, *, kind="event-scraper"):
                with session_factory() as db, db.begin():
                    repository = AgentSessionRepository(db)
                    repository.mark_failed(repository.require_session(session_id), error_message="Cancelled by user")
                return super().execute(code, url, timezone, timeout_ms, kind=kind)

        adapter = ScriptedAdapter([_fenced(GOOD_PROGRAM)] * 3)
        executor = CancellingExecutor([ExecutionResult(records=[TITLE_ONLY_EVENT], success=True)])

        _build(session_factory, adapter, executor).run_session(session_id)

        agent_session, attempts = _load(session_factory, session_id)
        assert agent_session.status == AgentSessionStatus.FAILED
        assert agent_session.error_message == "Cancelled by user"
        assert attempts == []
        assert len(adapter.prompts) == 1

    def test_improve_session_stores_inactive_version(self, session_factory) -> None:
        with session_factory() as db, db.begin():
            source = DataSourceRepository(db).create_source(
                name="Venue", url=URL, timezone="America/New_York", config={"kind": "event-scraper"}
            )
            ScraperVersionRepository(db).create_version(
                data_source_id=source.id, code=OTHER_PROGRAM, set_active=True
            )
        session_id = _claimed_session(
            session_factory,
            max_iterations=2,
            data_source_id=source.id,
            mode=AgentSessionMode.IMPROVE,
            user_feedback="Dates are missing",
        )
        adapter = ScriptedAdapter([_fenced(GOOD_PROGRAM)])
        executor = ScriptedExecutor([ExecutionResult(records=[COMPLETE_EVENT], success=True)])

        _build(session_factory, adapter, executor).run_session(session_id)

        agent_session, _ = _load(session_factory, session_id)
        assert agent_session.status == AgentSessionStatus.SUCCESS
        assert agent_session.result_version_id is not None
        # The active program is the baseline the model was asked to improve.
        assert "list(page.json_ld('Event'))" in adapter.prompts[0]
        assert "Dates are missing" in adapter.prompts[0]

        with session_factory() as db:
            versions = ScraperVersionRepository(db)
            stored = versions.get_version(agent_session.result_version_id)
            assert stored.version_number == 2
            assert stored.is_active is False
            assert versions.get_active_version(source.id).code == OTHER_PROGRAM

    def test_improve_identical_to_stored_version_is_approvable(self, session_factory) -> None:
        with session_factory() as db, db.begin():
            source = DataSourceRepository(db).create_source(
                name="Venue", url=URL, timezone="America/New_York", config={"kind": "event-scraper"}
            )
            versions = ScraperVersionRepository(db)
            versions.create_version(data_source_id=source.id, code=OTHER_PROGRAM, set_active=True)
            earlier = versions.create_version(data_source_id=source.id, code=GOOD_PROGRAM, set_active=False)
        session_id = _claimed_session(
            session_factory,
            max_iterations=2,
            data_source_id=source.id,
            mode=AgentSessionMode.IMPROVE,
            user_feedback="Go back to structured data",
        )
        adapter = ScriptedAdapter([_fenced(GOOD_PROGRAM)])
        executor = ScriptedExecutor([ExecutionResult(records=[COMPLETE_EVENT], success=True)])

        _build(session_factory, adapter, executor).run_session(session_id)

        agent_session, _ = _load(session_factory, session_id)
        assert agent_session.status == AgentSessionStatus.SUCCESS
        assert agent_session.result_version_id == earlier.id
        assert "Identical to stored version 2" in agent_session.thinking_steps[-1]["message"]

        with session_factory() as db:
            approved, version = AgentSessionService(session_factory=session_factory, settings=_settings()).approve(
                db=db, session_id=session_id
            )
        assert approved.status == AgentSessionStatus.APPROVED
        assert version.id == earlier.id
        with session_factory() as db:
            versions = ScraperVersionRepository(db)
            assert versions.get_active_version(source.id).code == GOOD_PROGRAM
            assert len(versions.list_versions(source.id)) == 2
