"""Bounded retry for LLM code generation.

Retries when the model call fails or when the response holds no
extractable program. The number of attempts is fixed up front; the
caller's iteration budget is never extended by retries.
"""

import logging
import time
from typing import List, Union

from llm_synthesis.adapter import BaseLLMAdapter
from llm_synthesis.validator import LLMOutputValidationError, extract_code

logger = logging.getLogger(__name__)

AttemptError = Union[LLMOutputValidationError, Exception]


class LLMRetryExhaustedError(Exception):
    """Raised when every generation attempt fails.

    Attributes:
        attempts: Total number of attempts made (initial + retries).
        last_error: The error from the final attempt.
        history: Errors from every failed attempt.
    """

    def __init__(
        self,
        attempts: int,
        last_error: AttemptError,
        history: List[AttemptError],
    ) -> None:
        self.attempts = attempts
        self.last_error = last_error
        self.history = history
        super().__init__(
            f"LLM code generation failed after {attempts} attempt(s). "
            f"Last error: {last_error}"
        )


def generate_code_with_retry(
    adapter: BaseLLMAdapter,
    prompt: str,
    max_retries: int = 2,
    backoff_seconds: float = 1.0,
) -> str:
    """Generate a candidate program, retrying on upstream or extraction errors.

    Args:
        adapter: An LLM adapter implementing ``generate(prompt) -> str``.
        prompt: The fully formatted prompt string.
        max_retries: Maximum number of *additional* attempts after the
            first failure. Total attempts = 1 + max_retries.
        backoff_seconds: Delay before the first retry; doubles each retry.

    Returns:
        The extracted program text.

    Raises:
        LLMRetryExhaustedError: If all attempts fail.
    """
    errors: List[AttemptError] = []
    total_attempts = 1 + max(0, max_retries)

    for attempt in range(1, total_attempts + 1):
        try:
            raw = adapter.generate(prompt)
            code = extract_code(raw)
            if attempt > 1:
                logger.info(
                    "LLM code generation succeeded on attempt %d/%d",
                    attempt,
                    total_attempts,
                )
            return code

        except LLMOutputValidationError as exc:
            errors.append(exc)
            logger.warning(
                "Attempt %d/%d failed at stage '%s': %s",
                attempt,
                total_attempts,
                exc.stage,
                "; ".join(exc.errors),
            )
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)
            logger.warning(
                "Attempt %d/%d failed calling the model: %s",
                attempt,
                total_attempts,
                exc,
            )

        if attempt < total_attempts and backoff_seconds > 0:
            time.sleep(backoff_seconds * (2 ** (attempt - 1)))

    raise LLMRetryExhaustedError(
        attempts=total_attempts,
        last_error=errors[-1],
        history=errors,
    )
