"""Structured prompt builder for scraper code generation."""

import json
from typing import Any, Dict, List, Optional

from app.scraping.records import EVENT_SCRAPER, VENUE_INFO, field_set_for
from app.validators.code_validator import ALLOWED_IMPORTS, ENTRY_POINTS
from llm_synthesis.schema import AttemptFeedback

_MAX_JSON_LD_CHARS = 6_000
_MAX_SAMPLE_RECORDS = 2

_SYSTEM_INSTRUCTIONS = """\
You write Python extraction programs for a sandboxed scraper runtime.

STRICT RULES:
- Define exactly one top-level function: {signature}.
- `page` is a handle with: page.url, page.html, page.timezone, page.soup()
  (a parsed BeautifulSoup), page.json_ld(type_suffix=None) (list of JSON-LD
  objects), page.absolute_url(href), page.fetch(url) / page.fetch_soup(url)
  for a few extra pages on the same site.
- Import ONLY from: {imports}.
- Do NOT use open, eval, exec, getattr, os, sys, subprocess, requests or any
  network/file access. Do NOT access private or dunder attributes.
- {return_contract}
- Dates and times may be ISO strings or datetime objects; naive values are
  interpreted in the `timezone` argument.
- Respond with a single ```python code block and nothing else.
"""

_RETURN_CONTRACTS = {
    EVENT_SCRAPER: "Return a list of dicts, one per event.",
    VENUE_INFO: "Return one dict describing the venue.",
}

_SECTION_TEMPLATE = """\
## {title}
{body}
"""

_FENCED_TEMPLATE = "```{language}\n{content}\n```"


class ScraperPromptBuilder:
    """Builds a deterministic prompt for one generation iteration.

    The first iteration sees the target and page analysis; later
    iterations additionally see the previous candidate and a structured
    summary of how it performed.
    """

    def build_prompt(
        self,
        *,
        url: str,
        kind: str,
        timezone: str,
        condensed_html: Optional[str] = None,
        json_ld: Optional[List[Dict[str, Any]]] = None,
        detail_url: Optional[str] = None,
        detail_html: Optional[str] = None,
        baseline_code: Optional[str] = None,
        user_feedback: Optional[str] = None,
        previous: Optional[AttemptFeedback] = None,
    ) -> str:
        """Build the full prompt for one iteration.

        Args:
            url: Target page URL.
            kind: Session kind (``event-scraper`` or ``venue-info``).
            timezone: IANA timezone of the venue.
            condensed_html: Condensed markup of the target page.
            json_ld: Structured-data objects found on the page.
            detail_url: URL of a sample detail page, if one was found.
            detail_html: Condensed markup of that detail page.
            baseline_code: Existing program to improve, if any.
            user_feedback: Free-text guidance from an operator.
            previous: Summary of the previous iteration's candidate.

        Returns:
            A fully formatted prompt string ready for LLM consumption.
        """
        entry = ENTRY_POINTS[kind]
        field_set = field_set_for(kind)

        header = _SYSTEM_INSTRUCTIONS.format(
            signature=f"def {entry.signature}",
            imports=", ".join(sorted(ALLOWED_IMPORTS - {"__future__"})),
            return_contract=_RETURN_CONTRACTS[kind],
        )

        sections = [
            self._section(
                "Target",
                f"URL: {url}\nKind: {kind}\nTimezone: {timezone}",
            ),
            self._section(
                "Fields",
                "Required (snake_case keys): "
                + ", ".join(field_set.required)
                + "\nOptional: "
                + ", ".join(field_set.optional),
            ),
        ]

        if condensed_html:
            sections.append(self._section("Page markup (condensed)", self._fence("html", condensed_html)))
        if json_ld:
            sections.append(
                self._section(
                    "Structured data (JSON-LD) on the page",
                    self._fence("json", self._clip(json.dumps(json_ld, indent=2, default=str), _MAX_JSON_LD_CHARS)),
                )
            )
        if detail_html:
            title = f"Sample detail page ({detail_url})" if detail_url else "Sample detail page"
            sections.append(self._section(title, self._fence("html", detail_html)))
        if baseline_code:
            sections.append(
                self._section(
                    "Current program (improve it, keep what works)",
                    self._fence("python", baseline_code.strip()),
                )
            )
        if user_feedback:
            sections.append(self._section("Operator feedback", user_feedback.strip()))
        if previous is not None:
            sections.append(self._section("Previous attempt", self._render_previous(previous)))

        return f"{header}\n# CONTEXT\n\n" + "\n".join(sections) + "\n# TASK\n\n" + self._task(kind, previous)

    def _render_previous(self, previous: AttemptFeedback) -> str:
        parts = [previous.to_text()]
        if previous.sample_records:
            samples = previous.sample_records[:_MAX_SAMPLE_RECORDS]
            parts.append("Sample output:\n" + self._fence("json", json.dumps(samples, indent=2, default=str)))
        if previous.code:
            parts.append("Program:\n" + self._fence("python", previous.code.strip()))
        return "\n\n".join(parts)

    @staticmethod
    def _task(kind: str, previous: Optional[AttemptFeedback]) -> str:
        target = "every event listed on the page" if kind == EVENT_SCRAPER else "the venue's details"
        if previous is None:
            return f"Write the program that extracts {target}."
        return (
            f"Fix the problems listed under 'Previous attempt' and return an improved "
            f"program that extracts {target}, filling as many fields as the page provides."
        )

    @staticmethod
    def _section(title: str, body: str) -> str:
        return _SECTION_TEMPLATE.format(title=title, body=body)

    @staticmethod
    def _fence(language: str, content: str) -> str:
        return _FENCED_TEMPLATE.format(language=language, content=content)

    @staticmethod
    def _clip(text: str, limit: int) -> str:
        if len(text) <= limit:
            return text
        return text[:limit] + "\n..."
