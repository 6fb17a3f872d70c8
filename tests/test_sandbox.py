"""
tests/test_sandbox.py

End-to-end runs of the sandboxed executor against canned markup.

Each test spawns a real child process; no browser is involved because
the executor is given a StaticMarkupFetcher.

Coverage
--------
- JSON-LD and soup based programs produce normalized records
- Venue programs may return a single dict
- Validation failures never start a process
- Candidate exceptions, wrong return types and fetch failures
- Hard timeout kills the child and leaves no live process behind
- Module attribute chains cannot reach sys or os, statically or at runtime
"""

from __future__ import annotations

import json
import multiprocessing

import pytest

from app.failure_codes import FailureType
from app.scraping.markup import StaticMarkupFetcher
from app.scraping.records import VENUE_INFO
from app.scraping.sandbox import SandboxedExecutor
from app.validators.code_validator import CodeValidationResult

URL = "https://venue.example.com/calendar"
GENEROUS_TIMEOUT_MS = 60_000

EVENT_LD = {
    "@context": "https://schema.org",
    "@type": "MusicEvent",
    "name": "Jazz Night",
    "startDate": "2026-12-05T20:00:00",
    "url": "/events/jazz-night",
}

PAGE = (
    "<html><head>"
    f'<script type="application/ld+json">{json.dumps(EVENT_LD)}</script>'
    "</head><body>"
    '<div class="event" data-start="2026-12-06T21:00:00"><h2>Blues Night</h2>'
    '<a href="/events/blues-night">More</a></div>'
    '<div class="event" data-start="2026-12-07T19:30:00"><h2>Folk Night</h2>'
    '<a href="/events/folk-night">More</a></div>'
    "</body></html>"
)

JSON_LD_PROGRAM = """\
def scrape_events(page, timezone):
    events = []
    for item in page.json_ld("Event"):
        events.append({
            "title": item.get("name"),
            "starts_at": item.get("startDate"),
            "source_url": page.absolute_url(item.get("url")),
        })
    return events
"""

SOUP_PROGRAM = """\
from urllib.parse import urljoin


def scrape_events(page, timezone):
    events = []
    for card in page.soup().select("div.event"):
        events.append({
            "title": card.find("h2").get_text(strip=True),
            "startsAt": card["data-start"],
            "sourceUrl": urljoin(page.url, card.find("a")["href"]),
        })
    return events
"""


@pytest.fixture()
def executor() -> SandboxedExecutor:
    return SandboxedExecutor(fetcher=StaticMarkupFetcher({URL: PAGE}), default_timeout_ms=GENEROUS_TIMEOUT_MS)


def _live_sandboxes() -> list:
    return [child for child in multiprocessing.active_children() if child.name == "scraper-sandbox"]


class TestSuccessfulRuns:
    def test_json_ld_program(self, executor: SandboxedExecutor) -> None:
        result = executor.execute(JSON_LD_PROGRAM, URL, "America/New_York", GENEROUS_TIMEOUT_MS)

        assert result.success, result.errors
        assert result.failure_type is None
        assert result.record_count == 1
        record = result.records[0]
        assert record["title"] == "Jazz Night"
        assert record["starts_at"] == "2026-12-06T01:00:00+00:00"
        assert record["source_url"] == "https://venue.example.com/events/jazz-night"

    def test_soup_program_with_camel_case_keys(self, executor: SandboxedExecutor) -> None:
        result = executor.execute(SOUP_PROGRAM, URL, "America/Chicago", GENEROUS_TIMEOUT_MS)

        assert result.success, result.errors
        assert [record["title"] for record in result.records] == ["Blues Night", "Folk Night"]
        assert result.records[0]["starts_at"] == "2026-12-07T03:00:00+00:00"
        assert result.records[1]["source_url"] == "https://venue.example.com/events/folk-night"

    def test_venue_program_returning_dict(self, executor: SandboxedExecutor) -> None:
        code = (
            "def scrape_venue_info(page):\n"
            "    return {'name': 'Blue Room', 'website': page.url, 'state': 'TX'}\n"
        )
        result = executor.execute(code, URL, "America/Chicago", GENEROUS_TIMEOUT_MS, kind=VENUE_INFO)

        assert result.success, result.errors
        assert result.record_count == 1
        assert result.records[0]["name"] == "Blue Room"


class TestFailedRuns:
    def test_validation_failure_skips_execution(self, executor: SandboxedExecutor) -> None:
        code = "import os\n\ndef scrape_events(page, timezone):\n    return os.listdir('/')\n"
        result = executor.execute(code, URL, "UTC", GENEROUS_TIMEOUT_MS)

        assert not result.success
        assert result.failure_type == FailureType.VALIDATION
        assert result.duration_ms < 5_000

    def test_candidate_exception_is_parse_error(self, executor: SandboxedExecutor) -> None:
        code = "def scrape_events(page, timezone):\n    return [1 / 0]\n"
        result = executor.execute(code, URL, "UTC", GENEROUS_TIMEOUT_MS)

        assert not result.success
        assert result.failure_type == FailureType.PARSE_ERROR
        assert result.errors[0].startswith("ZeroDivisionError")
        assert "(line 2)" in result.errors[0]

    def test_non_list_output_is_unexpected_format(self, executor: SandboxedExecutor) -> None:
        code = "def scrape_events(page, timezone):\n    return 'nothing'\n"
        result = executor.execute(code, URL, "UTC", GENEROUS_TIMEOUT_MS)

        assert result.failure_type == FailureType.UNEXPECTED_FORMAT
        assert result.errors == ["Expected a list of records, got str"]

    def test_unreachable_page_is_http_error(self) -> None:
        executor = SandboxedExecutor(fetcher=StaticMarkupFetcher({}), default_timeout_ms=GENEROUS_TIMEOUT_MS)
        result = executor.execute(JSON_LD_PROGRAM, URL, "UTC", GENEROUS_TIMEOUT_MS)

        assert result.failure_type == FailureType.HTTP_ERROR
        assert URL in result.errors[0]


class TestTimeout:
    def test_infinite_loop_is_killed(self) -> None:
        executor = SandboxedExecutor(fetcher=StaticMarkupFetcher({URL: PAGE}))
        code = (
            "def scrape_events(page, timezone):\n"
            "    while True:\n"
            "        pass\n"
            "    return []\n"
        )
        result = executor.execute(code, URL, "UTC", 3_000)

        assert not result.success
        assert result.failure_type == FailureType.TIMEOUT
        assert result.errors == ["Execution timed out after 3000 ms"]
        assert any("Unbounded while-loop" in warning for warning in result.warnings)
        assert _live_sandboxes() == []


class AcceptEverything:
    """Stands in for the static gate so the runtime layer is exercised alone."""

    def validate(self, code, kind="event-scraper"):
        return CodeValidationResult(accepted=True)


ESCAPE_PROGRAMS = {
    "dataclasses": """\
import dataclasses


def scrape_events(page, timezone):
    shell = dataclasses.sys.modules["os"].system
    shell("true")
    return [{"title": "escaped", "starts_at": "2026-12-06T01:00:00+00:00"}]
""",
    "typing": """\
from typing import sys


def scrape_events(page, timezone):
    return [{"title": str(sys.modules["os"].environ), "starts_at": "2026-12-06T01:00:00+00:00"}]
""",
}


class TestModuleEscapes:
    @pytest.mark.parametrize("module", sorted(ESCAPE_PROGRAMS))
    def test_static_gate_rejects_escape(self, executor: SandboxedExecutor, module: str) -> None:
        result = executor.execute(ESCAPE_PROGRAMS[module], URL, "UTC", GENEROUS_TIMEOUT_MS)

        assert not result.success
        assert result.failure_type == FailureType.VALIDATION

    @pytest.mark.parametrize("module", sorted(ESCAPE_PROGRAMS))
    def test_runtime_modules_hide_interpreter(self, module: str) -> None:
        executor = SandboxedExecutor(
            fetcher=StaticMarkupFetcher({URL: PAGE}),
            validator=AcceptEverything(),
            default_timeout_ms=GENEROUS_TIMEOUT_MS,
        )
        result = executor.execute(ESCAPE_PROGRAMS[module], URL, "UTC", GENEROUS_TIMEOUT_MS)

        assert not result.success
        assert result.failure_type == FailureType.PARSE_ERROR
        assert result.errors[0].startswith(("AttributeError", "ImportError"))
        assert "sys" in result.errors[0]

    def test_allowed_modules_still_work(self) -> None:
        executor = SandboxedExecutor(
            fetcher=StaticMarkupFetcher({URL: PAGE}),
            validator=AcceptEverything(),
            default_timeout_ms=GENEROUS_TIMEOUT_MS,
        )
        code = """\
import collections.abc
import datetime as dt
import urllib.parse
from urllib import parse


def scrape_events(page, timezone):
    start = dt.datetime(2026, 12, 6, 1, 0, tzinfo=dt.timezone.utc)
    return [{
        "title": "Late Show" if isinstance({}, collections.abc.Mapping) else "",
        "starts_at": start.isoformat(),
        "source_url": parse.urljoin(urllib.parse.urljoin(page.url, "/"), "events/late-show"),
    }]
"""
        result = executor.execute(code, URL, "UTC", GENEROUS_TIMEOUT_MS)

        assert result.success, result.errors
        assert result.records[0]["source_url"] == "https://venue.example.com/events/late-show"
