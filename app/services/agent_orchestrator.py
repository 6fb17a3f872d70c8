"""
app/services/agent_orchestrator.py

Drives one synthesis session: generate -> validate -> execute -> score,
feeding each outcome into the next prompt until the completeness
threshold is met or the iteration budget is spent.

Progress is committed after every step so status polling and the event
stream can follow a session without talking to the worker running it.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from app.config import AgentSettings, get_agent_settings
from app.failure_codes import FailureType
from app.scraping.html_processor import condense_html, extract_json_ld, find_detail_link
from app.scraping.logging_utils import log_event
from app.scraping.markup import MarkupFetcher, MarkupFetchError, PlaywrightMarkupFetcher
from app.scraping.records import EVENT_SCRAPER, field_set_for
from app.scraping.sandbox import SandboxedExecutor
from app.scraping.scoring import find_quality_issues, missing_required_fields, sample_records, score_records
from app.scraping.types import CompletenessReport, ExecutionResult
from app.validators.code_validator import CodeValidator
from db.base import utcnow
from db.models.agent_session import (
    AgentAttemptStatus,
    AgentSession,
    AgentSessionMode,
    AgentSessionStatus,
)
from db.models.scraper_version import ScraperVersionProvenance
from db.repositories import (
    AgentSessionRepository,
    DuplicateVersionError,
    ScraperVersionRepository,
    compute_code_hash,
)
from llm_synthesis.adapter import BaseLLMAdapter, build_llm_adapter
from llm_synthesis.prompt_builder import ScraperPromptBuilder
from llm_synthesis.retry import LLMRetryExhaustedError, generate_code_with_retry
from llm_synthesis.schema import AttemptFeedback

logger = logging.getLogger(__name__)

_EXTRACTED_SAMPLE_SIZE = 10
_PROMPT_SAMPLE_SIZE = 2


class ThinkingStep:
    ANALYSIS = "analysis"
    PLANNING = "planning"
    CODE_GENERATION = "code_generation"
    VALIDATION = "validation"
    EXECUTION = "execution"
    EVALUATION = "evaluation"
    IMPROVEMENT = "improvement"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class PageAnalysis:
    condensed_html: str | None = None
    json_ld: list[dict[str, Any]] = field(default_factory=list)
    detail_url: str | None = None
    detail_html: str | None = None


class SessionCancelled(Exception):
    """
    The session left ``in-progress``, or another worker claimed it, while this
    worker was running it.
    """


class AgentOrchestrator:
    def __init__(
        self,
        *,
        session_factory: sessionmaker[Session] | None = None,
        adapter_factory: Callable[[str | None], BaseLLMAdapter] | None = None,
        executor: SandboxedExecutor | None = None,
        fetcher_factory: Callable[[], MarkupFetcher] | None = None,
        validator: CodeValidator | None = None,
        prompt_builder: ScraperPromptBuilder | None = None,
        settings: AgentSettings | None = None,
        llm_retry_backoff_seconds: float = 1.0,
    ) -> None:
        if session_factory is None:
            from db.session import SessionLocal

            self._session_factory = SessionLocal
        else:
            self._session_factory = session_factory

        self._settings = settings or get_agent_settings()
        self._adapter_factory = adapter_factory or (lambda model: build_llm_adapter(model))
        self._executor = executor or SandboxedExecutor(default_timeout_ms=self._settings.execution_timeout_ms)
        self._fetcher_factory = fetcher_factory or PlaywrightMarkupFetcher
        self._validator = validator or CodeValidator()
        self._prompt_builder = prompt_builder or ScraperPromptBuilder()
        self._llm_retry_backoff_seconds = llm_retry_backoff_seconds

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run_session(self, session_id: uuid.UUID, claim_generation: int | None = None) -> None:
        """
        Run a claimed (in-progress) session to a terminal state.

        ``claim_generation`` is the value returned by the claim; the run stops
        without writing as soon as the stored claim moves past it. When omitted,
        the generation current at load time is used.
        """

        with self._session_factory() as db:
            repository = AgentSessionRepository(db)
            try:
                agent_session = repository.get_session(session_id)
                if agent_session is None:
                    raise RuntimeError(f"Agent session not found: {session_id}")
                if agent_session.status != AgentSessionStatus.IN_PROGRESS:
                    logger.info(
                        "Skipping agent session id=%s in status %s",
                        session_id,
                        agent_session.status,
                    )
                    return
                log_event(
                    logger,
                    logging.INFO,
                    "agent_session_started",
                    session_id=session_id,
                    url=agent_session.url,
                    kind=agent_session.kind,
                    mode=agent_session.mode,
                    resume_from=agent_session.current_iteration,
                )
                generation = claim_generation if claim_generation is not None else agent_session.claim_count
                self._run(db, repository, agent_session, generation)
            except SessionCancelled:
                db.rollback()
                log_event(logger, logging.INFO, "agent_session_cancelled", session_id=session_id)
            except Exception as exc:
                self._mark_session_failed(db=db, session_id=session_id, exc=exc)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _run(
        self,
        db: Session,
        repository: AgentSessionRepository,
        agent_session: AgentSession,
        generation: int,
    ) -> None:
        kind = agent_session.kind
        field_set = field_set_for(kind)
        threshold = self._settings.completeness_threshold

        analysis = self._analyze_page(repository, agent_session)
        db.commit()

        baseline_code = self._resolve_baseline(db, repository, agent_session)
        repository.append_thinking(
            agent_session,
            step_type=ThinkingStep.PLANNING,
            message=(
                "Improving the existing scraper with the feedback provided."
                if baseline_code
                else "Writing a new scraper from the page analysis."
            ),
            data={
                "max_iterations": agent_session.max_iterations,
                "completeness_threshold": threshold,
                "has_baseline": baseline_code is not None,
            },
        )
        db.commit()

        adapter = self._adapter_factory(agent_session.model)
        previous = self._previous_feedback(repository, agent_session)
        last_error: str | None = None

        first_iteration = agent_session.current_iteration + 1
        for iteration in range(first_iteration, agent_session.max_iterations + 1):
            self._ensure_running(db, agent_session, generation)
            started_at = utcnow()
            agent_session.current_iteration = iteration
            repository.append_thinking(
                agent_session,
                step_type=ThinkingStep.CODE_GENERATION,
                message=f"Iteration {iteration}/{agent_session.max_iterations}: generating scraper code.",
            )
            db.commit()

            prompt = self._prompt_builder.build_prompt(
                url=agent_session.url,
                kind=kind,
                timezone=agent_session.timezone,
                condensed_html=analysis.condensed_html,
                json_ld=analysis.json_ld,
                detail_url=analysis.detail_url,
                detail_html=analysis.detail_html,
                baseline_code=baseline_code,
                user_feedback=agent_session.user_feedback,
                previous=previous,
            )

            try:
                code = generate_code_with_retry(
                    adapter,
                    prompt,
                    max_retries=self._settings.llm_max_retries,
                    backoff_seconds=self._llm_retry_backoff_seconds,
                )
            except LLMRetryExhaustedError as exc:
                self._ensure_running(db, agent_session, generation)
                last_error = f"Code generation failed: {exc.last_error}"
                repository.add_attempt(
                    session_id=agent_session.id,
                    attempt_number=iteration,
                    status=AgentAttemptStatus.LLM_ERROR,
                    started_at=started_at,
                    errors=[str(error) for error in exc.history],
                )
                repository.append_thinking(agent_session, step_type=ThinkingStep.FAILURE, message=last_error)
                db.commit()
                continue

            self._ensure_running(db, agent_session, generation)
            validation = self._validator.validate(code, kind)
            if not validation.accepted:
                last_error = "Validation failed: " + "; ".join(validation.errors)
                previous = AttemptFeedback(
                    attempt_number=iteration,
                    status=AgentAttemptStatus.INVALID,
                    failure_type=FailureType.VALIDATION,
                    code=code,
                    errors=list(validation.errors),
                )
                repository.add_attempt(
                    session_id=agent_session.id,
                    attempt_number=iteration,
                    status=AgentAttemptStatus.INVALID,
                    started_at=started_at,
                    failure_type=FailureType.VALIDATION,
                    code=code,
                    code_hash=compute_code_hash(code),
                    errors=list(validation.errors),
                    feedback=previous.to_text(),
                )
                repository.append_thinking(
                    agent_session,
                    step_type=ThinkingStep.VALIDATION,
                    message=f"Generated code was rejected: {'; '.join(validation.errors)}",
                    data={"errors": list(validation.errors)},
                )
                db.commit()
                continue

            repository.append_thinking(
                agent_session,
                step_type=ThinkingStep.EXECUTION,
                message=f"Running the scraper against {agent_session.url}.",
                data={"warnings": list(validation.warnings)} if validation.warnings else None,
            )
            db.commit()

            result = self._executor.execute(
                code,
                agent_session.url,
                agent_session.timezone,
                self._settings.execution_timeout_ms,
                kind=kind,
            )
            self._ensure_running(db, agent_session, generation)

            report = score_records(result.records, field_set)
            quality_issues = find_quality_issues(result.records) if kind == EVENT_SCRAPER else []
            feedback = self._build_feedback(iteration, code, result, report, quality_issues, kind)

            repository.add_attempt(
                session_id=agent_session.id,
                attempt_number=iteration,
                status=AgentAttemptStatus.SUCCESS if result.success else AgentAttemptStatus.ERROR,
                started_at=started_at,
                failure_type=result.failure_type,
                code=code,
                code_hash=compute_code_hash(code),
                record_count=result.record_count,
                completeness=report.completeness,
                fields_found=report.fields_found(),
                fields_missing=feedback.fields_missing,
                errors=list(result.errors),
                feedback=feedback.to_text(),
                duration_ms=result.duration_ms,
            )
            repository.append_thinking(
                agent_session,
                step_type=ThinkingStep.EVALUATION,
                message=self._evaluation_message(result, report),
                data={
                    "record_count": result.record_count,
                    "completeness": report.completeness,
                    "coverage": report.coverage,
                    "failure_type": result.failure_type,
                },
            )
            log_event(
                logger,
                logging.INFO,
                "agent_iteration_complete",
                session_id=agent_session.id,
                iteration=iteration,
                success=result.success,
                failure_type=result.failure_type,
                record_count=result.record_count,
                completeness=report.completeness,
            )

            if result.success and (agent_session.best_score is None or report.completeness > agent_session.best_score):
                agent_session.best_code = code
                agent_session.best_score = report.completeness
                agent_session.extracted_data = self._snapshot(result, report, kind)

            if result.success and report.completeness >= threshold:
                repository.mark_success(agent_session)
                repository.append_thinking(
                    agent_session,
                    step_type=ThinkingStep.SUCCESS,
                    message=(
                        f"Completeness {report.completeness:.0%} meets the {threshold:.0%} threshold "
                        f"after {iteration} iteration(s)."
                    ),
                )
                db.commit()
                log_event(
                    logger,
                    logging.INFO,
                    "agent_session_succeeded",
                    session_id=agent_session.id,
                    iterations=iteration,
                    completeness=report.completeness,
                )
                self._store_improvement(db, repository, agent_session)
                return

            last_error = "; ".join(result.errors[:3]) if result.errors else None
            previous = feedback
            repository.append_thinking(
                agent_session,
                step_type=ThinkingStep.IMPROVEMENT,
                message=self._improvement_message(result, report, feedback, threshold),
            )
            db.commit()

        self._ensure_running(db, agent_session, generation)
        best = agent_session.best_score or 0.0
        message = (
            f"Max iterations exhausted without meeting completeness threshold {threshold:.2f} "
            f"(best {best:.2f})"
        )
        if last_error:
            message = f"{message}; last error: {last_error}"
        repository.mark_failed(agent_session, error_message=message[:2000])
        repository.append_thinking(agent_session, step_type=ThinkingStep.FAILURE, message=message)
        db.commit()
        log_event(logger, logging.INFO, "agent_session_failed", session_id=agent_session.id, error=message)

    # ------------------------------------------------------------------
    # Context gathering
    # ------------------------------------------------------------------

    def _analyze_page(self, repository: AgentSessionRepository, agent_session: AgentSession) -> PageAnalysis:
        fetcher = self._fetcher_factory()
        try:
            try:
                html = fetcher.fetch(agent_session.url)
            except MarkupFetchError as exc:
                repository.append_thinking(
                    agent_session,
                    step_type=ThinkingStep.ANALYSIS,
                    message=f"Could not load the page for analysis ({exc}); generating without markup.",
                )
                return PageAnalysis()

            condensed = condense_html(html, max_chars=self._settings.html_context_chars)
            type_suffix = "Event" if agent_session.kind == EVENT_SCRAPER else None
            json_ld = extract_json_ld(html, type_suffix=type_suffix)

            detail_url = None
            detail_html = None
            if agent_session.kind == EVENT_SCRAPER:
                detail_url = find_detail_link(html, agent_session.url)
                if detail_url:
                    try:
                        detail_html = condense_html(
                            fetcher.fetch(detail_url),
                            max_chars=self._settings.detail_context_chars,
                        )
                    except MarkupFetchError as exc:
                        logger.info("Detail page fetch failed url=%s error=%s", detail_url, exc)
                        detail_url = None

            repository.append_thinking(
                agent_session,
                step_type=ThinkingStep.ANALYSIS,
                message=(
                    f"Loaded {agent_session.url}: {len(html)} characters of markup, "
                    f"{len(json_ld)} structured-data item(s)"
                    + (f", sample detail page {detail_url}." if detail_html else ".")
                ),
                data={"html_chars": len(html), "json_ld_items": len(json_ld), "detail_url": detail_url},
            )
            return PageAnalysis(
                condensed_html=condensed,
                json_ld=json_ld,
                detail_url=detail_url,
                detail_html=detail_html,
            )
        finally:
            fetcher.close()

    def _resolve_baseline(
        self,
        db: Session,
        repository: AgentSessionRepository,
        agent_session: AgentSession,
    ) -> str | None:
        if agent_session.baseline_code:
            return agent_session.baseline_code
        if agent_session.data_source_id is not None:
            active = ScraperVersionRepository(db).get_active_version(agent_session.data_source_id)
            if active is not None:
                return active.code
        earlier = repository.best_session_code(url=agent_session.url, kind=agent_session.kind)
        if earlier is not None and earlier.id != agent_session.id:
            return earlier.best_code
        return None

    def _previous_feedback(
        self,
        repository: AgentSessionRepository,
        agent_session: AgentSession,
    ) -> AttemptFeedback | None:
        """Rebuild the last attempt's feedback when a requeued session resumes."""
        attempts = repository.list_attempts(agent_session.id)
        if not attempts:
            return None
        last = attempts[-1]
        return AttemptFeedback(
            attempt_number=last.attempt_number,
            status=last.status,
            failure_type=last.failure_type,
            code=last.code,
            errors=list(last.errors or []),
            record_count=last.record_count,
            completeness=min(1.0, max(0.0, last.completeness)),
            fields_missing=list(last.fields_missing or []),
        )

    # ------------------------------------------------------------------
    # Feedback and snapshots
    # ------------------------------------------------------------------

    @staticmethod
    def _build_feedback(
        iteration: int,
        code: str,
        result: ExecutionResult,
        report: CompletenessReport,
        quality_issues: list[str],
        kind: str,
    ) -> AttemptFeedback:
        field_set = field_set_for(kind)
        missing = missing_required_fields(report, field_set)
        missing.extend(name for name in report.fields_missing() if name not in missing)
        return AttemptFeedback(
            attempt_number=iteration,
            status=AgentAttemptStatus.SUCCESS if result.success else AgentAttemptStatus.ERROR,
            failure_type=result.failure_type,
            code=code,
            errors=list(result.errors),
            record_count=result.record_count,
            completeness=report.completeness,
            coverage=dict(report.coverage),
            fields_missing=missing,
            quality_issues=quality_issues,
            sample_records=sample_records(result.records, field_set, limit=_PROMPT_SAMPLE_SIZE),
        )

    @staticmethod
    def _snapshot(result: ExecutionResult, report: CompletenessReport, kind: str) -> dict[str, Any]:
        field_set = field_set_for(kind)
        snapshot: dict[str, Any] = {
            "record_count": result.record_count,
            "completeness": report.completeness,
            "coverage": dict(report.coverage),
        }
        if kind == EVENT_SCRAPER:
            snapshot["events"] = sample_records(result.records, field_set, limit=_EXTRACTED_SAMPLE_SIZE)
        else:
            snapshot["venue"] = result.records[0] if result.records else None
        return snapshot

    @staticmethod
    def _evaluation_message(result: ExecutionResult, report: CompletenessReport) -> str:
        if not result.success:
            detail = result.errors[0] if result.errors else "no error detail"
            return f"Execution failed ({result.failure_type}): {detail}"
        return f"Extracted {result.record_count} record(s) with {report.completeness:.0%} completeness."

    @staticmethod
    def _improvement_message(
        result: ExecutionResult,
        report: CompletenessReport,
        feedback: AttemptFeedback,
        threshold: float,
    ) -> str:
        if not result.success:
            return "Feeding the execution error back to the model."
        if result.record_count == 0:
            return "No records were extracted; asking the model to find the event listing."
        missing = ", ".join(feedback.fields_missing[:6]) or "none"
        return (
            f"Completeness {report.completeness:.0%} is below {threshold:.0%}; "
            f"asking for missing fields: {missing}."
        )

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def _ensure_running(self, db: Session, agent_session: AgentSession, generation: int) -> None:
        db.refresh(agent_session)
        if agent_session.status != AgentSessionStatus.IN_PROGRESS or agent_session.claim_count != generation:
            raise SessionCancelled(agent_session.id)

    def _store_improvement(
        self,
        db: Session,
        repository: AgentSessionRepository,
        agent_session: AgentSession,
    ) -> None:
        """
        Keep a successful improve/repair result as an inactive version.
        """

        if agent_session.mode == AgentSessionMode.CREATE or agent_session.data_source_id is None:
            return
        if not agent_session.best_code:
            return

        reason = agent_session.user_feedback or "automatic repair"
        try:
            version = ScraperVersionRepository(db).create_version(
                data_source_id=agent_session.data_source_id,
                code=agent_session.best_code,
                description=f"AI improvement: {reason[:100]}",
                provenance=ScraperVersionProvenance.AI_IMPROVED,
                set_active=False,
                created_by="agent",
                agent_session_id=agent_session.id,
            )
            agent_session.result_version_id = version.id
            repository.append_thinking(
                agent_session,
                step_type=ThinkingStep.SUCCESS,
                message=f"Saved as inactive version {version.version_number} for review.",
            )
            db.commit()
        except DuplicateVersionError as exc:
            db.rollback()
            logger.info(
                "Improved code already stored session=%s version=%s",
                agent_session.id,
                exc.existing_version_number,
            )
            # Approval activates the stored copy instead of creating a new version.
            agent_session.result_version_id = exc.existing_version_id
            repository.append_thinking(
                agent_session,
                step_type=ThinkingStep.SUCCESS,
                message=f"Identical to stored version {exc.existing_version_number}; approval will activate it.",
            )
            db.commit()

    def _mark_session_failed(self, *, db: Session, session_id: uuid.UUID, exc: Exception) -> None:
        repository = AgentSessionRepository(db)
        error_message = f"{type(exc).__name__}: {exc}"
        logger.exception("Agent session failed id=%s error=%s", session_id, error_message)
        try:
            db.rollback()
            agent_session = repository.get_session(session_id)
            if agent_session is None:
                logger.error("Unable to mark agent session as failed because it was not found id=%s", session_id)
                return
            if agent_session.status in AgentSessionStatus.IN_FLIGHT:
                repository.mark_failed(agent_session, error_message=error_message[:2000])
                repository.append_thinking(agent_session, step_type=ThinkingStep.FAILURE, message=error_message)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Failed to persist failed agent session state id=%s", session_id)
