"""
Run scraper synthesis sessions, dry runs, and production runs from the CLI.
"""

from __future__ import annotations

import argparse
import json
import uuid
from pathlib import Path

from app.config import get_agent_settings
from app.scraping.records import EVENT_SCRAPER, VENUE_INFO, field_set_for
from app.scraping.sandbox import SandboxedExecutor
from app.scraping.scoring import score_records
from app.services.agent_session_service import AgentSessionService
from app.services.production_run_service import ProductionRunService
from db.session import SessionLocal


def _start(args: argparse.Namespace) -> int:
    service = AgentSessionService()
    with SessionLocal() as db:
        start = service.start_session(
            db=db,
            executor=None,
            url=args.url,
            kind=args.kind,
            model=args.model,
            max_iterations=args.max_iterations,
            user_feedback=args.feedback,
            timezone=args.timezone,
        )
    session_id = start.session.id
    if start.created:
        service.dispatch(session_id)

    with SessionLocal() as db:
        agent_session = service.get_session(db=db, session_id=session_id)
        payload = {
            "session_id": str(agent_session.id),
            "status": agent_session.status,
            "iterations": agent_session.current_iteration,
            "best_score": agent_session.best_score,
            "error_message": agent_session.error_message,
        }
        if args.show_code:
            payload["best_code"] = agent_session.best_code
    print(json.dumps(payload, indent=2))
    return 0 if payload["status"] == "success" else 1


def _test(args: argparse.Namespace) -> int:
    code = Path(args.file).read_text(encoding="utf-8")
    timeout_ms = args.timeout_ms or get_agent_settings().test_timeout_ms
    result = SandboxedExecutor().execute(code, args.url, args.timezone, timeout_ms, kind=args.kind)
    report = score_records(result.records, field_set_for(args.kind))
    payload = {
        **result.to_dict(),
        "completeness": report.completeness,
        "coverage": report.coverage,
        "samples": result.records[: args.samples],
    }
    print(json.dumps(payload, indent=2, default=str))
    return 0 if result.success else 1


def _run_source(args: argparse.Namespace) -> int:
    service = ProductionRunService()
    if args.all:
        summaries = service.run_all()
    else:
        summaries = [service.run_source(uuid.UUID(args.data_source_id))]
    print(json.dumps([summary.to_dict() for summary in summaries], indent=2))
    return 0 if all(summary.status != "failed" for summary in summaries) else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Scraper agent command line.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    start = subparsers.add_parser("start", help="Run one synthesis session in-process.")
    start.add_argument("url", help="Target page URL.")
    start.add_argument("--kind", choices=(EVENT_SCRAPER, VENUE_INFO), default=EVENT_SCRAPER)
    start.add_argument("--model", default=None, help="Generation model override.")
    start.add_argument("--max-iterations", dest="max_iterations", type=int, default=None)
    start.add_argument("--feedback", default=None, help="Extra guidance for the model.")
    start.add_argument("--timezone", default=None)
    start.add_argument("--show-code", dest="show_code", action="store_true")
    start.set_defaults(handler=_start)

    test = subparsers.add_parser("test", help="Execute a local program file against a URL.")
    test.add_argument("file", help="Path to the program source.")
    test.add_argument("url", help="Target page URL.")
    test.add_argument("--kind", choices=(EVENT_SCRAPER, VENUE_INFO), default=EVENT_SCRAPER)
    test.add_argument("--timezone", default="America/New_York")
    test.add_argument("--timeout-ms", dest="timeout_ms", type=int, default=None)
    test.add_argument("--samples", type=int, default=5, help="Records to print.")
    test.set_defaults(handler=_test)

    run_source = subparsers.add_parser("run-source", help="Trigger a production run.")
    target = run_source.add_mutually_exclusive_group(required=True)
    target.add_argument("data_source_id", nargs="?", help="Data source UUID.")
    target.add_argument("--all", action="store_true", help="Run every active source.")
    run_source.set_defaults(handler=_run_source)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return args.handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
