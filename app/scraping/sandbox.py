"""
Sandboxed execution of candidate scraper programs.

Each run happens in a freshly spawned child process that becomes the
leader of its own process group. The child renders the target page,
executes the candidate with a reduced builtin set and an allowlisted
importer, and sends plain records back over a pipe. The parent waits at
most ``timeout_ms``; on expiry the whole process group (including the
browser the child started) is killed, so cancellation never depends on
the candidate cooperating.
"""

from __future__ import annotations

import builtins
import logging
import multiprocessing
import os
import signal
import time
import traceback
from datetime import date, datetime
from types import ModuleType
from typing import Any
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from app.config import BrowserSettings, get_browser_settings
from app.failure_codes import FailureType
from app.scraping.html_processor import extract_json_ld
from app.scraping.logging_utils import log_event
from app.scraping.markup import MarkupFetcher, MarkupFetchError, PlaywrightMarkupFetcher
from app.scraping.records import normalize_records
from app.scraping.types import ExecutionResult
from app.validators.code_validator import (
    ENTRY_POINTS,
    EVENT_SCRAPER,
    CodeValidator,
    is_allowed_module,
)

logger = logging.getLogger(__name__)

_KILL_GRACE_SECONDS = 5.0

# Imported lazily by C code (datetime.strptime) through the caller's __import__.
_INTERNAL_IMPORTS = frozenset({"_strptime"})

_SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "ascii", "bool", "bytes", "callable", "chr", "dict",
    "divmod", "enumerate", "filter", "float", "format", "frozenset", "hash",
    "hex", "int", "isinstance", "issubclass", "iter", "len", "list", "map",
    "max", "min", "next", "object", "oct", "ord", "pow", "range", "repr",
    "reversed", "round", "set", "slice", "sorted", "staticmethod", "str",
    "sum", "tuple", "type", "zip", "classmethod", "property", "super",
    "print", "hasattr",
    "Exception", "ArithmeticError", "AttributeError", "IndexError",
    "KeyError", "LookupError", "StopIteration", "TypeError", "ValueError",
    "ZeroDivisionError", "RuntimeError", "NotImplementedError",
    "True", "False", "None", "NotImplemented",
)


# ---------------------------------------------------------------------------
# Capability handle given to the candidate
# ---------------------------------------------------------------------------


class PageContext:
    """
    Everything a candidate program may touch.

    ``fetch`` loads further pages on the same host through the executor's
    browser, up to a fixed budget per run.
    """

    def __init__(
        self,
        *,
        url: str,
        html: str,
        timezone: str,
        fetcher: MarkupFetcher,
        max_extra_pages: int,
    ) -> None:
        self._url = url
        self._html = html
        self._timezone = timezone
        self._fetcher = fetcher
        self._pages_left = max_extra_pages
        self._host = urlparse(url).netloc
        self._soup: BeautifulSoup | None = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def html(self) -> str:
        return self._html

    @property
    def timezone(self) -> str:
        return self._timezone

    def soup(self) -> BeautifulSoup:
        if self._soup is None:
            self._soup = BeautifulSoup(self._html, "html.parser")
        return self._soup

    def json_ld(self, type_suffix: str | None = None) -> list[dict[str, Any]]:
        return extract_json_ld(self._html, type_suffix=type_suffix)

    def absolute_url(self, href: str | None) -> str | None:
        if not href:
            return None
        return urljoin(self._url, href)

    def fetch(self, url: str) -> str:
        target = urljoin(self._url, url)
        if urlparse(target).netloc != self._host:
            raise PermissionError(f"fetch() is limited to {self._host}: {target}")
        if self._pages_left <= 0:
            raise PermissionError("fetch() page budget exhausted")
        self._pages_left -= 1
        return self._fetcher.fetch(target)

    def fetch_soup(self, url: str) -> BeautifulSoup:
        return BeautifulSoup(self.fetch(url), "html.parser")


# ---------------------------------------------------------------------------
# Child process side
# ---------------------------------------------------------------------------


class ModuleProxy:
    """
    Read-only view of an imported module.

    Only public attributes are visible, and attributes that are themselves
    modules are visible only when they are allowlisted (wrapped again), so
    ``dataclasses.sys`` and similar chains fail with AttributeError.
    """

    __slots__ = ("_module",)

    _VISIBLE_DUNDERS = frozenset({"__name__", "__all__"})

    def __init__(self, module: ModuleType) -> None:
        object.__setattr__(self, "_module", module)

    def __getattribute__(self, name: str) -> Any:
        module = object.__getattribute__(self, "_module")
        if name.startswith("_") and name not in ModuleProxy._VISIBLE_DUNDERS:
            raise AttributeError(f"module {module.__name__!r} has no attribute {name!r}")
        value = getattr(module, name)
        if isinstance(value, ModuleType):
            if not is_allowed_module(value.__name__):
                raise AttributeError(f"module {module.__name__!r} has no attribute {name!r}")
            return ModuleProxy(value)
        return value

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("modules are read-only in the sandbox")

    def __delattr__(self, name: str) -> None:
        raise AttributeError("modules are read-only in the sandbox")

    def __dir__(self) -> list[str]:
        module = object.__getattribute__(self, "_module")
        return [name for name in dir(module) if not name.startswith("_")]

    def __repr__(self) -> str:
        return f"<module {object.__getattribute__(self, '_module').__name__!r}>"


def _restricted_import(
    name: str,
    globals: Any = None,
    locals: Any = None,
    fromlist: Any = (),
    level: int = 0,
) -> Any:
    if level:
        raise ImportError("relative imports are not available")
    # Lazy imports made by C code expect the real module.
    if name in _INTERNAL_IMPORTS:
        return builtins.__import__(name, globals, locals, fromlist, level)
    if not is_allowed_module(name):
        if not (name == "urllib" and fromlist and set(fromlist) <= {"parse"}):
            raise ImportError(f"import of {name!r} is not available in the sandbox")
    return ModuleProxy(builtins.__import__(name, globals, locals, fromlist, level))


def _safe_builtins() -> dict[str, Any]:
    allowed = {name: getattr(builtins, name) for name in _SAFE_BUILTIN_NAMES}
    allowed["__import__"] = _restricted_import
    allowed["__build_class__"] = builtins.__build_class__
    return allowed


def _to_plain(value: Any, depth: int = 0) -> Any:
    """
    Reduce candidate output to picklable JSON-like values.
    """

    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if depth > 4:
        return str(value)
    if isinstance(value, dict):
        return {str(key): _to_plain(item, depth + 1) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_to_plain(item, depth + 1) for item in value]
    if hasattr(value, "get_text"):
        return value.get_text(" ", strip=True)
    return str(value)


def _describe_exception(exc: BaseException) -> str:
    frames = [
        frame for frame in traceback.extract_tb(exc.__traceback__) if frame.filename == "<candidate>"
    ]
    where = f" (line {frames[-1].lineno})" if frames else ""
    return f"{type(exc).__name__}: {exc}{where}"


def run_candidate(connection: Any, payload: dict[str, Any]) -> None:
    """
    Child process entry point. Sends exactly one message, or none if killed.
    """

    if hasattr(os, "setpgrp"):
        os.setpgrp()

    fetcher: MarkupFetcher = payload["fetcher"]
    entry = ENTRY_POINTS[payload["kind"]]
    message: dict[str, Any]
    try:
        try:
            html = fetcher.fetch(payload["url"])
        except MarkupFetchError as exc:
            message = {"failure_type": FailureType.HTTP_ERROR, "error": str(exc)}
            return

        page = PageContext(
            url=payload["url"],
            html=html,
            timezone=payload["timezone"],
            fetcher=fetcher,
            max_extra_pages=payload["max_extra_pages"],
        )
        namespace: dict[str, Any] = {"__builtins__": _safe_builtins(), "__name__": "candidate"}
        try:
            exec(compile(payload["code"], "<candidate>", "exec"), namespace)
            function = namespace[entry.name]
            if len(entry.params) == 2:
                raw = function(page, payload["timezone"])
            else:
                raw = function(page)
        except MarkupFetchError as exc:
            message = {"failure_type": FailureType.HTTP_ERROR, "error": str(exc)}
            return
        except Exception as exc:  # noqa: BLE001
            message = {"failure_type": FailureType.PARSE_ERROR, "error": _describe_exception(exc)}
            return

        message = {"raw": _to_plain(raw)}
    except BaseException as exc:  # noqa: BLE001
        message = {"failure_type": FailureType.PARSE_ERROR, "error": _describe_exception(exc)}
    finally:
        try:
            fetcher.close()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Ignoring fetcher close failure in sandbox: %s", exc)
        connection.send(message)
        connection.close()


# ---------------------------------------------------------------------------
# Parent side
# ---------------------------------------------------------------------------


class SandboxedExecutor:
    """
    Runs one validated program against one URL under a hard timeout.
    """

    def __init__(
        self,
        *,
        fetcher: MarkupFetcher | None = None,
        settings: BrowserSettings | None = None,
        validator: CodeValidator | None = None,
        default_timeout_ms: int = 30_000,
    ) -> None:
        self._settings = settings or get_browser_settings()
        self._fetcher = fetcher or PlaywrightMarkupFetcher(self._settings)
        self._validator = validator or CodeValidator(max_code_bytes=self._settings.max_code_bytes)
        self._default_timeout_ms = default_timeout_ms
        self._context = multiprocessing.get_context("spawn")

    def execute(
        self,
        code: str,
        url: str,
        timezone: str = "America/New_York",
        timeout_ms: int | None = None,
        *,
        kind: str = EVENT_SCRAPER,
    ) -> ExecutionResult:
        started = time.perf_counter()
        timeout_ms = timeout_ms or self._default_timeout_ms

        validation = self._validator.validate(code, kind)
        if not validation.accepted:
            return ExecutionResult(
                errors=list(validation.errors),
                warnings=list(validation.warnings),
                duration_ms=self._elapsed_ms(started),
                success=False,
                failure_type=FailureType.VALIDATION,
            )

        payload = {
            "code": code,
            "url": url,
            "timezone": timezone,
            "kind": kind,
            "fetcher": self._fetcher,
            "max_extra_pages": self._settings.max_extra_pages,
        }
        receiver, sender = self._context.Pipe(duplex=False)
        process = self._context.Process(
            target=run_candidate,
            args=(sender, payload),
            name="scraper-sandbox",
            daemon=True,
        )
        process.start()
        sender.close()

        message: dict[str, Any] | None = None
        timed_out = False
        try:
            if receiver.poll(timeout_ms / 1000):
                try:
                    message = receiver.recv()
                except EOFError:
                    message = None
            else:
                timed_out = True
        finally:
            receiver.close()
            self._reap(process, force=timed_out)

        duration_ms = self._elapsed_ms(started)
        if timed_out:
            log_event(logger, logging.WARNING, "sandbox_timeout", url=url, timeout_ms=timeout_ms)
            return ExecutionResult(
                errors=[f"Execution timed out after {timeout_ms} ms"],
                warnings=list(validation.warnings),
                duration_ms=duration_ms,
                success=False,
                failure_type=FailureType.TIMEOUT,
            )
        if message is None:
            return ExecutionResult(
                errors=[f"Sandbox process exited unexpectedly (exit code {process.exitcode})"],
                warnings=list(validation.warnings),
                duration_ms=duration_ms,
                success=False,
                failure_type=FailureType.PARSE_ERROR,
            )
        if "failure_type" in message:
            log_event(
                logger,
                logging.INFO,
                "sandbox_candidate_failed",
                url=url,
                failure_type=message["failure_type"],
                error=message["error"],
            )
            return ExecutionResult(
                errors=[message["error"]],
                warnings=list(validation.warnings),
                duration_ms=duration_ms,
                success=False,
                failure_type=message["failure_type"],
            )

        return self._build_result(
            message["raw"],
            kind=kind,
            timezone=timezone,
            duration_ms=duration_ms,
            warnings=list(validation.warnings),
        )

    def _build_result(
        self,
        raw: Any,
        *,
        kind: str,
        timezone: str,
        duration_ms: int,
        warnings: list[str],
    ) -> ExecutionResult:
        if isinstance(raw, dict):
            raw = [raw]
        if not isinstance(raw, list):
            return ExecutionResult(
                errors=[f"Expected a list of records, got {type(raw).__name__}"],
                warnings=warnings,
                duration_ms=duration_ms,
                success=False,
                failure_type=FailureType.UNEXPECTED_FORMAT,
            )

        records, record_errors = normalize_records(
            raw,
            kind=kind,
            timezone_name=timezone,
            max_records=self._settings.max_records,
        )
        if raw and not records:
            return ExecutionResult(
                errors=record_errors or ["No usable records in output"],
                warnings=warnings,
                duration_ms=duration_ms,
                success=False,
                failure_type=FailureType.UNEXPECTED_FORMAT,
            )

        return ExecutionResult(
            records=records,
            errors=record_errors,
            warnings=warnings,
            duration_ms=duration_ms,
            success=True,
        )

    @staticmethod
    def _reap(process: multiprocessing.process.BaseProcess, *, force: bool) -> None:
        if force and process.is_alive():
            try:
                if hasattr(os, "killpg"):
                    os.killpg(process.pid, signal.SIGKILL)
                else:
                    process.kill()
            except (ProcessLookupError, PermissionError):
                process.kill()
        process.join(_KILL_GRACE_SECONDS)
        if process.is_alive():
            process.kill()
            process.join(_KILL_GRACE_SECONDS)

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)
