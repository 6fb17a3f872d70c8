"""
tests/test_scheduler_and_cli.py

Job registration and command line parsing; nothing is started or run.
"""

from __future__ import annotations

import pytest

from app.config import SchedulerSettings
from app.scheduler.jobs import build_scheduler
from scripts.run_agent_session import build_parser


def test_scheduler_registers_all_jobs() -> None:
    scheduler = build_scheduler(SchedulerSettings(queue_poll_seconds=7, worker_concurrency=3))

    jobs = {job.id: job for job in scheduler.get_jobs()}

    assert set(jobs) == {"agent_queue", "production_scrapers", "alert_dedup_sweep", "health_digest"}
    assert jobs["agent_queue"].max_instances == 3
    assert jobs["agent_queue"].trigger.interval.total_seconds() == 7
    assert not scheduler.running


class TestCommandLine:
    def test_start_arguments(self) -> None:
        args = build_parser().parse_args(
            ["start", "https://venue.example.com", "--kind", "venue-info", "--max-iterations", "3"]
        )
        assert args.command == "start"
        assert args.kind == "venue-info"
        assert args.max_iterations == 3
        assert args.show_code is False

    def test_test_defaults(self) -> None:
        args = build_parser().parse_args(["test", "scraper.py", "https://venue.example.com"])
        assert args.timezone == "America/New_York"
        assert args.samples == 5

    def test_run_source_target_is_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["run-source"])

    def test_run_all(self) -> None:
        args = build_parser().parse_args(["run-source", "--all"])
        assert args.all is True
        assert args.data_source_id is None
