"""
Markup fetchers: rendered pages through a headless browser, or canned
pages for replay and tests.

Fetchers are plain picklable objects so they can be handed to the
sandbox child process; the browser itself is only started inside that
process, on first use.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any

from app.config import BrowserSettings, get_browser_settings
from app.scraping.logging_utils import log_event

logger = logging.getLogger(__name__)


class MarkupFetchError(RuntimeError):
    """
    Raised when a page cannot be retrieved (DNS, TLS, HTTP status, navigation).
    """

    def __init__(self, url: str, reason: str, *, status_code: int | None = None) -> None:
        self.url = url
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Failed to fetch {url}: {reason}")


class MarkupFetcher(ABC):
    """
    Returns the rendered HTML of a URL.
    """

    @abstractmethod
    def fetch(self, url: str) -> str:
        """
        Fetch one page and return its markup.
        """

    def close(self) -> None:
        """
        Release any resources held between fetches.
        """

    def __enter__(self) -> MarkupFetcher:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class StaticMarkupFetcher(MarkupFetcher):
    """
    Serves pre-recorded markup keyed by URL.
    """

    def __init__(self, pages: dict[str, str], *, default: str | None = None) -> None:
        self._pages = dict(pages)
        self._default = default

    def fetch(self, url: str) -> str:
        if url in self._pages:
            return self._pages[url]
        if self._default is not None:
            return self._default
        raise MarkupFetchError(url, "no recorded page", status_code=404)


class PlaywrightMarkupFetcher(MarkupFetcher):
    """
    Renders pages in headless Chromium.

    Readiness is a bounded retry/backoff wait for ``ready_selector``;
    when the selector never shows up the fetcher falls back to a fixed
    delay and takes whatever has rendered. One browser is reused for all
    fetches until ``close()``.
    """

    def __init__(self, settings: BrowserSettings | None = None) -> None:
        self.settings = settings or get_browser_settings()
        self._playwright: Any = None
        self._browser: Any = None
        self._context: Any = None

    def __getstate__(self) -> dict[str, Any]:
        # Browser handles never cross a process boundary.
        return {"settings": self.settings}

    def __setstate__(self, state: dict[str, Any]) -> None:
        self.settings = state["settings"]
        self._playwright = None
        self._browser = None
        self._context = None

    def fetch(self, url: str) -> str:
        from playwright.sync_api import Error as PlaywrightError

        context = self._ensure_context()
        page = context.new_page()
        try:
            try:
                response = page.goto(
                    url,
                    wait_until="domcontentloaded",
                    timeout=self.settings.navigation_timeout_ms,
                )
            except PlaywrightError as exc:
                raise MarkupFetchError(url, str(exc).splitlines()[0]) from exc

            if response is not None and response.status >= 400:
                raise MarkupFetchError(
                    url,
                    f"HTTP {response.status}",
                    status_code=response.status,
                )

            self._wait_until_ready(page, url)
            html = page.content()
            log_event(
                logger,
                logging.DEBUG,
                "page_rendered",
                url=url,
                html_chars=len(html),
            )
            return html
        finally:
            page.close()

    def close(self) -> None:
        for handle in (self._context, self._browser):
            if handle is None:
                continue
            try:
                handle.close()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Ignoring browser close failure: %s", exc)
        if self._playwright is not None:
            self._playwright.stop()
        self._playwright = None
        self._browser = None
        self._context = None

    def _ensure_context(self) -> Any:
        if self._context is not None:
            return self._context

        from playwright.sync_api import sync_playwright

        self._playwright = sync_playwright().start()
        self._browser = self._playwright.chromium.launch(headless=self.settings.headless)
        context_kwargs: dict[str, Any] = {}
        if self.settings.user_agent:
            context_kwargs["user_agent"] = self.settings.user_agent
        self._context = self._browser.new_context(**context_kwargs)
        return self._context

    def _wait_until_ready(self, page: Any, url: str) -> None:
        from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

        for attempt in range(self.settings.ready_retries + 1):
            try:
                page.wait_for_selector(
                    self.settings.ready_selector,
                    timeout=self.settings.ready_timeout_ms,
                )
                return
            except PlaywrightTimeoutError:
                if attempt >= self.settings.ready_retries:
                    break
                backoff_seconds = self.settings.backoff_initial_seconds * (
                    self.settings.backoff_multiplier**attempt
                )
                time.sleep(backoff_seconds)

        log_event(
            logger,
            logging.INFO,
            "ready_selector_missing",
            url=url,
            selector=self.settings.ready_selector,
            fallback_delay_ms=self.settings.fallback_delay_ms,
        )
        page.wait_for_timeout(self.settings.fallback_delay_ms)
