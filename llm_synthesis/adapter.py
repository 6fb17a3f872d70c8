"""LLM adapters for scraper code generation.

Provides a base interface and concrete adapters for OpenAI-compatible
APIs and a deterministic mock for testing.
"""

import os
from abc import ABC, abstractmethod
from typing import Optional

from app.config import LLMSettings, get_llm_settings

SYSTEM_PROMPT = (
    "You are an expert web scraping engineer. You write small, robust Python "
    "functions that extract structured data from HTML with BeautifulSoup. "
    "You only use the capabilities you are given and you return code only."
)


class BaseLLMAdapter(ABC):
    """Abstract base for all LLM adapters."""

    @abstractmethod
    def generate(self, prompt: str) -> str:
        """Send a prompt to the LLM and return the raw response text.

        Args:
            prompt: The fully formatted prompt string.

        Returns:
            Raw string response from the model (expected to contain a
            fenced Python code block).
        """


class OpenAILLMAdapter(BaseLLMAdapter):
    """Adapter for OpenAI-compatible chat completion APIs.

    Uses a moderate temperature so successive iterations can explore
    different extraction strategies for the same page.
    """

    def __init__(
        self,
        model: str = "gpt-4o",
        max_tokens: int = 8000,
        temperature: float = 0.3,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: float = 120.0,
        client_max_retries: int = 1,
    ) -> None:
        """Initialise the OpenAI adapter.

        Args:
            model: Model identifier.
            max_tokens: Maximum tokens in the completion.
            temperature: Sampling temperature.
            api_key: OpenAI API key. Falls back to OPENAI_API_KEY env var.
            base_url: Optional base URL for OpenAI-compatible endpoints.
            timeout_seconds: Per-request timeout passed to the client.
            client_max_retries: Retries the client makes on its own before
                raising; retries across responses happen in the caller.
        """
        try:
            from openai import OpenAI  # type: ignore[import-untyped]
        except ImportError as exc:
            raise ImportError(
                "openai package is required for OpenAILLMAdapter. "
                "Install it with: pip install openai"
            ) from exc

        resolved_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        client_kwargs: dict = {
            "api_key": resolved_key,
            "timeout": timeout_seconds,
            "max_retries": client_max_retries,
        }
        if base_url:
            client_kwargs["base_url"] = base_url

        self._client = OpenAI(**client_kwargs)
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature

    def generate(self, prompt: str) -> str:
        """Call the OpenAI chat completion API.

        Args:
            prompt: The fully formatted prompt string.

        Returns:
            Raw string content from the model response.
        """
        response = self._client.chat.completions.create(
            model=self._model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=self._temperature,
            max_tokens=self._max_tokens,
            stream=False,
        )
        return response.choices[0].message.content or ""


# ---------------------------------------------------------------------------
# Fixed mock response used for local testing: a generic JSON-LD scraper.
# ---------------------------------------------------------------------------
_MOCK_PROGRAM = '''\
def scrape_events(page, timezone):
    events = []
    for item in page.json_ld("Event"):
        location = item.get("location") or {}
        offers = item.get("offers") or {}
        if isinstance(offers, list):
            offers = offers[0] if offers else {}
        image = item.get("image")
        if isinstance(image, list):
            image = image[0] if image else None
        events.append({
            "title": item.get("name"),
            "starts_at": item.get("startDate"),
            "ends_at": item.get("endDate"),
            "description": item.get("description"),
            "image_url": image,
            "ticket_url": offers.get("url") if isinstance(offers, dict) else None,
            "cover_charge": offers.get("price") if isinstance(offers, dict) else None,
            "source_url": page.absolute_url(item.get("url")) or page.url,
        })
    return events
'''

_MOCK_RESPONSE = f"```python\n{_MOCK_PROGRAM}```\n"


class MockLLMAdapter(BaseLLMAdapter):
    """Deterministic adapter that returns a fixed scraper program.

    Used for local testing and CI pipelines where no LLM API
    is available.
    """

    def generate(self, prompt: str) -> str:
        """Return a fixed fenced program regardless of input.

        Args:
            prompt: Ignored - present only to satisfy the interface.

        Returns:
            A fenced Python block defining ``scrape_events``.
        """
        return _MOCK_RESPONSE


def build_llm_adapter(
    model: Optional[str] = None,
    settings: Optional[LLMSettings] = None,
) -> BaseLLMAdapter:
    """Build the configured adapter, optionally overriding the model.

    Args:
        model: Model selector requested for a session, if any.
        settings: Explicit settings; defaults to environment settings.

    Returns:
        A ready-to-use adapter.
    """
    resolved = settings or get_llm_settings()
    if resolved.adapter == "mock":
        return MockLLMAdapter()
    return OpenAILLMAdapter(
        model=model or resolved.model,
        max_tokens=resolved.max_tokens,
        temperature=resolved.temperature,
        api_key=resolved.api_key,
        base_url=resolved.base_url,
        timeout_seconds=resolved.timeout_seconds,
        client_max_retries=resolved.client_max_retries,
    )
