"""
app/config.py

Application-level configuration helpers.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from db.config import load_env_files

_SEVERITY_NAMES = ("warning", "error", "critical")


@lru_cache(maxsize=1)
def _load_env_once() -> None:
    """
    Ensure project `.env` files are loaded once before reading app settings.
    """

    load_env_files()


def _get_bool_env(name: str, default: bool) -> bool:
    """
    Read a boolean from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int_env(name: str, default: int) -> int:
    """
    Read an integer from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return int(raw_value)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    """
    Read a float from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return float(raw_value)
    except ValueError:
        return default


def _get_str_env(name: str, default: str) -> str:
    """
    Read a string from environment variables with fallback.
    """

    _load_env_once()
    value = os.getenv(name)
    if value is None:
        return default
    stripped = value.strip()
    return stripped if stripped else default


def _get_optional_str_env(name: str) -> str | None:
    """
    Read an optional string value from environment variables.
    """

    _load_env_once()
    value = os.getenv(name)
    if value is None:
        return None
    stripped = value.strip()
    return stripped if stripped else None


@dataclass(frozen=True)
class AgentSettings:
    """
    Synthesis loop budget and acceptance settings.
    """

    max_iterations: int = 5
    completeness_threshold: float = 0.6
    execution_timeout_ms: int = 120_000
    test_timeout_ms: int = 180_000
    improve_max_iterations: int = 2
    llm_max_retries: int = 2
    default_timezone: str = "America/New_York"
    html_context_chars: int = 30_000
    detail_context_chars: int = 10_000
    # Longer than the slowest step between heartbeats: one generation with all
    # retries, or one sandbox run.
    stale_session_seconds: int = 900
    max_session_claims: int = 2
    stream_poll_seconds: float = 0.5
    stream_max_seconds: int = 1800


@dataclass(frozen=True)
class BrowserSettings:
    """
    Browser automation and sandbox resource settings.
    """

    navigation_timeout_ms: int = 30_000
    ready_selector: str = "[class*='event'], main, article"
    ready_timeout_ms: int = 5_000
    ready_retries: int = 2
    backoff_initial_seconds: float = 0.5
    backoff_multiplier: float = 2.0
    fallback_delay_ms: int = 3_000
    headless: bool = True
    user_agent: str | None = None
    max_code_bytes: int = 500_000
    max_extra_pages: int = 5
    max_records: int = 2_000


@dataclass(frozen=True)
class MonitorSettings:
    """
    Production run classification thresholds.
    """

    baseline_window: int = 10
    structure_change_drop: float = 0.5
    severe_drop: float = 0.8
    malformed_ratio: float = 0.5
    notify_min_severity: str = "error"
    auto_repair_after: int = 3
    stale_days: int = 3
    failing_threshold: int = 3


@dataclass(frozen=True)
class NotificationSettings:
    """
    Alert delivery and deduplication settings.
    """

    cooldown_seconds: int = 3600
    sweep_interval_seconds: int = 600
    webhook_url: str | None = None
    webhook_timeout_seconds: float = 10.0


@dataclass(frozen=True)
class LLMSettings:
    """
    Code generation model settings.
    """

    adapter: str = "openai"
    model: str = "gpt-4o"
    max_tokens: int = 8000
    temperature: float = 0.3
    api_key: str | None = None
    base_url: str | None = None
    timeout_seconds: float = 120.0
    client_max_retries: int = 1


@dataclass(frozen=True)
class SchedulerSettings:
    """
    Background worker and periodic job settings.
    """

    enabled: bool = True
    queue_poll_seconds: int = 5
    worker_concurrency: int = 2
    production_run_hour: int = 6
    health_digest_hour: int = 9


@lru_cache(maxsize=1)
def get_agent_settings() -> AgentSettings:
    """
    Return cached synthesis agent settings from environment variables.
    """

    return AgentSettings(
        max_iterations=max(1, _get_int_env("AGENT_MAX_ITERATIONS", 5)),
        completeness_threshold=min(
            1.0, max(0.0, _get_float_env("AGENT_COMPLETENESS_THRESHOLD", 0.6))
        ),
        execution_timeout_ms=max(1000, _get_int_env("AGENT_EXECUTION_TIMEOUT_MS", 120_000)),
        test_timeout_ms=max(1000, _get_int_env("AGENT_TEST_TIMEOUT_MS", 180_000)),
        improve_max_iterations=max(1, _get_int_env("AGENT_IMPROVE_MAX_ITERATIONS", 2)),
        llm_max_retries=max(0, _get_int_env("AGENT_LLM_MAX_RETRIES", 2)),
        default_timezone=_get_str_env("AGENT_DEFAULT_TIMEZONE", "America/New_York"),
        html_context_chars=max(1000, _get_int_env("AGENT_HTML_CONTEXT_CHARS", 30_000)),
        detail_context_chars=max(0, _get_int_env("AGENT_DETAIL_CONTEXT_CHARS", 10_000)),
        stale_session_seconds=max(60, _get_int_env("AGENT_STALE_SESSION_SECONDS", 900)),
        max_session_claims=max(1, _get_int_env("AGENT_MAX_SESSION_CLAIMS", 2)),
        stream_poll_seconds=max(0.1, _get_float_env("AGENT_STREAM_POLL_SECONDS", 0.5)),
        stream_max_seconds=max(10, _get_int_env("AGENT_STREAM_MAX_SECONDS", 1800)),
    )


@lru_cache(maxsize=1)
def get_browser_settings() -> BrowserSettings:
    """
    Return cached browser and sandbox settings from environment variables.
    """

    return BrowserSettings(
        navigation_timeout_ms=max(1000, _get_int_env("BROWSER_NAVIGATION_TIMEOUT_MS", 30_000)),
        ready_selector=_get_str_env("BROWSER_READY_SELECTOR", "[class*='event'], main, article"),
        ready_timeout_ms=max(100, _get_int_env("BROWSER_READY_TIMEOUT_MS", 5_000)),
        ready_retries=max(0, _get_int_env("BROWSER_READY_RETRIES", 2)),
        backoff_initial_seconds=max(0.0, _get_float_env("BROWSER_BACKOFF_INITIAL_SECONDS", 0.5)),
        backoff_multiplier=max(1.0, _get_float_env("BROWSER_BACKOFF_MULTIPLIER", 2.0)),
        fallback_delay_ms=max(0, _get_int_env("BROWSER_FALLBACK_DELAY_MS", 3_000)),
        headless=_get_bool_env("BROWSER_HEADLESS", True),
        user_agent=_get_optional_str_env("BROWSER_USER_AGENT"),
        max_code_bytes=max(1024, _get_int_env("SANDBOX_MAX_CODE_BYTES", 500_000)),
        max_extra_pages=max(0, _get_int_env("SANDBOX_MAX_EXTRA_PAGES", 5)),
        max_records=max(1, _get_int_env("SANDBOX_MAX_RECORDS", 2_000)),
    )


@lru_cache(maxsize=1)
def get_monitor_settings() -> MonitorSettings:
    """
    Return cached production monitor settings from environment variables.
    """

    min_severity = _get_str_env("MONITOR_NOTIFY_MIN_SEVERITY", "error").lower()
    if min_severity not in _SEVERITY_NAMES:
        min_severity = "error"

    return MonitorSettings(
        baseline_window=max(1, _get_int_env("MONITOR_BASELINE_WINDOW", 10)),
        structure_change_drop=min(0.99, max(0.01, _get_float_env("MONITOR_STRUCTURE_CHANGE_DROP", 0.5))),
        severe_drop=min(1.0, max(0.01, _get_float_env("MONITOR_SEVERE_DROP", 0.8))),
        malformed_ratio=min(1.0, max(0.01, _get_float_env("MONITOR_MALFORMED_RATIO", 0.5))),
        notify_min_severity=min_severity,
        auto_repair_after=max(0, _get_int_env("MONITOR_AUTO_REPAIR_AFTER", 3)),
        stale_days=max(1, _get_int_env("MONITOR_STALE_DAYS", 3)),
        failing_threshold=max(1, _get_int_env("MONITOR_FAILING_THRESHOLD", 3)),
    )


@lru_cache(maxsize=1)
def get_notification_settings() -> NotificationSettings:
    """
    Return cached alert delivery settings from environment variables.
    """

    return NotificationSettings(
        cooldown_seconds=max(1, _get_int_env("ALERT_COOLDOWN_SECONDS", 3600)),
        sweep_interval_seconds=max(10, _get_int_env("ALERT_SWEEP_INTERVAL_SECONDS", 600)),
        webhook_url=_get_optional_str_env("PARSER_FAILURE_WEBHOOK_URL"),
        webhook_timeout_seconds=max(1.0, _get_float_env("ALERT_WEBHOOK_TIMEOUT_SECONDS", 10.0)),
    )


@lru_cache(maxsize=1)
def get_llm_settings() -> LLMSettings:
    """
    Return cached code generation model settings from environment variables.
    """

    return LLMSettings(
        adapter=_get_str_env("LLM_ADAPTER", "openai").lower(),
        model=_get_str_env("LLM_MODEL", "gpt-4o"),
        max_tokens=max(256, _get_int_env("LLM_MAX_TOKENS", 8000)),
        temperature=min(2.0, max(0.0, _get_float_env("LLM_TEMPERATURE", 0.3))),
        api_key=_get_optional_str_env("LLM_API_KEY") or _get_optional_str_env("OPENAI_API_KEY"),
        base_url=_get_optional_str_env("LLM_BASE_URL"),
        timeout_seconds=max(5.0, _get_float_env("LLM_TIMEOUT_SECONDS", 120.0)),
        client_max_retries=max(0, _get_int_env("LLM_CLIENT_MAX_RETRIES", 1)),
    )


@lru_cache(maxsize=1)
def get_scheduler_settings() -> SchedulerSettings:
    """
    Return cached scheduler settings from environment variables.
    """

    return SchedulerSettings(
        enabled=_get_bool_env("SCHEDULER_ENABLED", True),
        queue_poll_seconds=max(1, _get_int_env("SCHEDULER_QUEUE_POLL_SECONDS", 5)),
        worker_concurrency=max(1, _get_int_env("SCHEDULER_WORKER_CONCURRENCY", 2)),
        production_run_hour=min(23, max(0, _get_int_env("SCHEDULER_PRODUCTION_RUN_HOUR", 6))),
        health_digest_hour=min(23, max(0, _get_int_env("SCHEDULER_HEALTH_DIGEST_HOUR", 9))),
    )
