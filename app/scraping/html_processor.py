"""
Markup condensation for prompt context.

Turns a rendered page into a compact, structure-preserving excerpt the
model can reason about: pick the most relevant content region, drop
non-content tags and noisy attributes, and cap the size.
"""

from __future__ import annotations

import json
import re
from typing import Any
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Tag

TRUNCATION_MARKER = "[HTML truncated...]"

# Most specific first; a region must carry enough markup to be worth using.
CONTENT_SELECTORS = (
    ".eventlist",
    ".event-list",
    ".events-list",
    '[class*="event-list"]',
    ".events",
    ".event-calendar",
    '[class*="calendar"]',
    "main",
    "article",
    '[role="main"]',
    "#content",
    ".content",
    "body",
)
MIN_REGION_CHARS = 1000

STRIP_TAGS = (
    "script",
    "style",
    "svg",
    "noscript",
    "nav",
    "footer",
    "header",
    "iframe",
    "form",
    "input",
    "button",
)
KEEP_ATTRIBUTES = frozenset({"class", "id", "href", "src", "alt", "datetime"})

_WHITESPACE_RE = re.compile(r"\s+")
_DETAIL_PATH_RE = re.compile(r"/(events?|shows?|concerts?|calendar)/[^/?#]+", re.IGNORECASE)


def condense_html(html: str, *, max_chars: int = 30_000) -> str:
    """
    Return a cleaned excerpt of ``html`` no longer than ``max_chars`` plus
    the truncation marker.
    """

    if not html:
        return ""

    soup = BeautifulSoup(html, "html.parser")
    region = _select_region(soup)

    for tag_name in STRIP_TAGS:
        for element in region.find_all(tag_name):
            element.decompose()

    for element in region.find_all(True):
        element.attrs = {
            key: value for key, value in element.attrs.items() if key in KEEP_ATTRIBUTES
        }

    text = _WHITESPACE_RE.sub(" ", str(region)).strip()
    text = text.replace("> <", "><")
    if len(text) > max_chars:
        return f"{text[:max_chars]}\n{TRUNCATION_MARKER}"
    return text


def _select_region(soup: BeautifulSoup) -> Tag | BeautifulSoup:
    for selector in CONTENT_SELECTORS:
        element = soup.select_one(selector)
        if element is not None and len(str(element)) > MIN_REGION_CHARS:
            return element
    return soup.body or soup


def extract_json_ld(html: str, *, type_suffix: str | None = None) -> list[dict[str, Any]]:
    """
    Collect JSON-LD objects from ``<script type="application/ld+json">``.

    ``@graph`` containers and top-level arrays are flattened. With
    ``type_suffix`` (e.g. "Event") only objects whose ``@type`` ends with
    it are returned, which also matches MusicEvent, TheaterEvent, ...
    """

    if not html:
        return []

    soup = BeautifulSoup(html, "html.parser")
    found: list[dict[str, Any]] = []
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw = script.string or script.get_text()
        if not raw or not raw.strip():
            continue
        try:
            payload = json.loads(raw)
        except ValueError:
            continue
        found.extend(_flatten_ld(payload))

    if type_suffix is None:
        return found
    return [item for item in found if _ld_type_matches(item.get("@type"), type_suffix)]


def _flatten_ld(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        items: list[dict[str, Any]] = []
        for entry in payload:
            items.extend(_flatten_ld(entry))
        return items
    if isinstance(payload, dict):
        if isinstance(payload.get("@graph"), list):
            return _flatten_ld(payload["@graph"])
        return [payload]
    return []


def _ld_type_matches(value: Any, suffix: str) -> bool:
    if isinstance(value, list):
        return any(_ld_type_matches(entry, suffix) for entry in value)
    return isinstance(value, str) and value.endswith(suffix)


def find_detail_link(html: str, base_url: str) -> str | None:
    """
    First same-host link that looks like an individual event page.
    """

    if not html:
        return None

    base_host = urlparse(base_url).netloc
    base_clean = base_url.rstrip("/")
    soup = BeautifulSoup(html, "html.parser")
    for anchor in soup.find_all("a", href=True):
        absolute = urljoin(base_url, anchor["href"]).split("#", 1)[0]
        parsed = urlparse(absolute)
        if parsed.scheme not in {"http", "https"} or parsed.netloc != base_host:
            continue
        if absolute.rstrip("/") == base_clean:
            continue
        if _DETAIL_PATH_RE.search(parsed.path):
            return absolute
    return None
