from __future__ import annotations

import unittest

from app.validators.code_validator import (
    EVENT_SCRAPER,
    VENUE_INFO,
    CodeValidationError,
    CodeValidator,
)

VALID_EVENT_PROGRAM = """\
import re
from datetime import datetime
from urllib.parse import urljoin


def scrape_events(page, timezone):
    events = []
    for card in page.soup().select(".event"):
        link = card.find("a")
        events.append({
            "title": card.find("h2").get_text(strip=True),
            "starts_at": card.get("data-start"),
            "source_url": urljoin(page.url, link["href"]) if link else page.url,
        })
    return events
"""

VALID_VENUE_PROGRAM = """\
def scrape_venue_info(page):
    soup = page.soup()
    return {"name": soup.title.get_text(strip=True), "website": page.url}
"""


class TestCodeValidator(unittest.TestCase):
    def setUp(self) -> None:
        self.validator = CodeValidator()

    def test_accepts_valid_event_program(self) -> None:
        result = self.validator.validate(VALID_EVENT_PROGRAM, EVENT_SCRAPER)
        self.assertTrue(result.accepted, result.errors)
        self.assertEqual(result.errors, [])

    def test_accepts_valid_venue_program(self) -> None:
        result = self.validator.validate(VALID_VENUE_PROGRAM, VENUE_INFO)
        self.assertTrue(result.accepted, result.errors)

    def test_entry_point_depends_on_kind(self) -> None:
        result = self.validator.validate(VALID_VENUE_PROGRAM, EVENT_SCRAPER)
        self.assertFalse(result.accepted)
        self.assertIn("Missing required function scrape_events(page, timezone)", result.errors)

    def test_rejects_empty_code(self) -> None:
        result = self.validator.validate("   \n", EVENT_SCRAPER)
        self.assertEqual(result.errors, ["Code is empty"])

    def test_rejects_oversized_code(self) -> None:
        validator = CodeValidator(max_code_bytes=100)
        result = validator.validate(VALID_EVENT_PROGRAM, EVENT_SCRAPER)
        self.assertFalse(result.accepted)
        self.assertTrue(result.errors[0].startswith("Code exceeds size limit"))

    def test_reports_syntax_errors(self) -> None:
        result = self.validator.validate("def scrape_events(page, timezone)\n    return []\n", EVENT_SCRAPER)
        self.assertFalse(result.accepted)
        self.assertTrue(result.errors[0].startswith("Syntax error:"))
        self.assertIn("line 1", result.errors[0])

    def test_rejects_wrong_signature(self) -> None:
        code = "def scrape_events(page):\n    return []\n"
        result = self.validator.validate(code, EVENT_SCRAPER)
        self.assertFalse(result.accepted)
        self.assertIn("exactly 2 positional", result.errors[0])

    def test_requires_a_return_value(self) -> None:
        code = "def scrape_events(page, timezone):\n    events = []\n"
        result = self.validator.validate(code, EVENT_SCRAPER)
        self.assertIn("scrape_events must return the extracted data", result.errors)

    def test_rejects_denied_imports_with_reason(self) -> None:
        code = "import os\n\ndef scrape_events(page, timezone):\n    return []\n"
        result = self.validator.validate(code, EVENT_SCRAPER)
        self.assertFalse(result.accepted)
        self.assertIn(
            "Import of 'os' at line 1 is not allowed (file-system and process access)",
            result.errors,
        )

    def test_rejects_network_imports(self) -> None:
        for module in ("requests", "socket", "urllib.request"):
            with self.subTest(module=module):
                code = f"import {module}\n\ndef scrape_events(page, timezone):\n    return []\n"
                result = self.validator.validate(code, EVENT_SCRAPER)
                self.assertFalse(result.accepted)
                self.assertIn("network access", result.errors[0])

    def test_rejects_unlisted_imports(self) -> None:
        code = "import numpy\n\ndef scrape_events(page, timezone):\n    return []\n"
        result = self.validator.validate(code, EVENT_SCRAPER)
        self.assertIn("not in the sandbox allowlist", result.errors[0])

    def test_allows_urllib_parse_forms(self) -> None:
        for header in ("from urllib import parse", "import urllib.parse", "from urllib.parse import urljoin"):
            with self.subTest(header=header):
                code = f"{header}\n\ndef scrape_events(page, timezone):\n    return []\n"
                self.assertTrue(self.validator.validate(code, EVENT_SCRAPER).accepted)

    def test_rejects_dynamic_evaluation(self) -> None:
        code = "def scrape_events(page, timezone):\n    return eval('[]')\n"
        result = self.validator.validate(code, EVENT_SCRAPER)
        self.assertIn("Use of 'eval' at line 2 is not allowed (dynamic code evaluation)", result.errors)

    def test_rejects_dunder_and_private_attributes(self) -> None:
        code = (
            "def scrape_events(page, timezone):\n"
            "    base = page.__class__\n"
            "    return page._fetcher\n"
        )
        result = self.validator.validate(code, EVENT_SCRAPER)
        self.assertFalse(result.accepted)
        self.assertTrue(any("dunder attribute '__class__'" in error for error in result.errors))
        self.assertTrue(any("private attribute '_fetcher'" in error for error in result.errors))

    def test_rejects_module_chains_through_allowed_imports(self) -> None:
        payloads = {
            "dataclasses": "dataclasses.sys.modules['os'].system('id')",
            "typing": "typing.sys.modules['os'].environ",
        }
        for module, expression in payloads.items():
            with self.subTest(module=module):
                code = (
                    f"import {module}\n\n"
                    "def scrape_events(page, timezone):\n"
                    f"    shell = {expression}\n"
                    "    return []\n"
                )
                result = self.validator.validate(code, EVENT_SCRAPER)
                self.assertFalse(result.accepted)
                self.assertTrue(any("attribute 'sys'" in error for error in result.errors), result.errors)
                self.assertTrue(any("attribute 'modules'" in error for error in result.errors))

    def test_rejects_interpreter_modules_imported_by_name(self) -> None:
        code = "from typing import sys\n\ndef scrape_events(page, timezone):\n    return [sys.path]\n"
        result = self.validator.validate(code, EVENT_SCRAPER)
        self.assertFalse(result.accepted)
        self.assertIn(
            "Import of 'sys' from 'typing' at line 1 is not allowed (interpreter or process access)",
            result.errors,
        )

    def test_rejects_process_attributes_anywhere(self) -> None:
        for attribute in ("system", "popen", "environ", "execvp", "spawnl"):
            with self.subTest(attribute=attribute):
                code = f"def scrape_events(page, timezone):\n    return page.{attribute}\n"
                result = self.validator.validate(code, EVENT_SCRAPER)
                self.assertFalse(result.accepted)
                self.assertIn(
                    f"Access to attribute '{attribute}' at line 2 is not allowed (interpreter or process access)",
                    result.errors,
                )

    def test_rejects_unlisted_module_attribute_of_import(self) -> None:
        code = (
            "import json as j\n\n"
            "def scrape_events(page, timezone):\n"
            "    return [j.decoder.JSONDecodeError, j.codecs]\n"
        )
        result = self.validator.validate(code, EVENT_SCRAPER)
        self.assertFalse(result.accepted)
        self.assertEqual(len(result.errors), 1)
        self.assertIn("Access to module 'codecs' through 'json.codecs'", result.errors[0])

    def test_allows_public_module_attributes(self) -> None:
        code = (
            "import collections.abc\n"
            "import datetime as dt\n"
            "import urllib.parse\n\n"
            "def scrape_events(page, timezone):\n"
            "    stamp = dt.datetime.now(dt.timezone.utc)\n"
            "    link = urllib.parse.urljoin(page.url, '/events')\n"
            "    return [{'ok': isinstance({}, collections.abc.Mapping), 'at': stamp, 'url': link}]\n"
        )
        result = self.validator.validate(code, EVENT_SCRAPER)
        self.assertTrue(result.accepted, result.errors)

    def test_rejects_relative_import(self) -> None:
        code = "from . import helpers\n\ndef scrape_events(page, timezone):\n    return []\n"
        result = self.validator.validate(code, EVENT_SCRAPER)
        self.assertIn("Relative import at line 1 is not allowed", result.errors)

    def test_warnings_do_not_reject(self) -> None:
        code = (
            "def scrape_events(page, timezone):\n"
            "    print('starting')\n"
            "    while True:\n"
            "        break\n"
            "    return []\n"
        )
        result = self.validator.validate(code, EVENT_SCRAPER)
        self.assertTrue(result.accepted)
        self.assertEqual(len(result.warnings), 2)
        self.assertTrue(any(warning.startswith("Unbounded while-loop") for warning in result.warnings))

    def test_unknown_kind(self) -> None:
        result = self.validator.validate(VALID_EVENT_PROGRAM, "menu-scraper")
        self.assertFalse(result.accepted)
        self.assertTrue(result.errors[0].startswith("Unknown scraper kind"))

    def test_require_valid_raises_with_result(self) -> None:
        with self.assertRaises(CodeValidationError) as ctx:
            self.validator.require_valid("import subprocess\n", EVENT_SCRAPER)
        payload = ctx.exception.to_dict()
        self.assertFalse(payload["accepted"])
        self.assertGreaterEqual(len(payload["errors"]), 2)


if __name__ == "__main__":
    unittest.main()
