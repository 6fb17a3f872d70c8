"""Extraction layer for raw LLM code-generation output.

Pulls the candidate program out of a model response. Safety checks on
the program itself live in ``app.validators.code_validator``.
"""

import re
from typing import List

_FENCE_RE = re.compile(r"```([A-Za-z0-9_+-]*)[ \t]*\n(.*?)```", re.DOTALL)
_ENTRY_HINT_RE = re.compile(r"^\s*(?:def|from|import)\s", re.MULTILINE)


class LLMOutputValidationError(Exception):
    """Raised when no program can be extracted from an LLM response.

    Attributes:
        stage: Which extraction step failed ("empty" or "no_code").
        errors: List of human-readable error descriptions.
        raw_response: The original string that failed extraction.
    """

    def __init__(
        self,
        stage: str,
        errors: List[str],
        raw_response: str,
    ) -> None:
        self.stage = stage
        self.errors = errors
        self.raw_response = raw_response
        message = (
            f"LLM output extraction failed at stage '{stage}': "
            + "; ".join(errors)
        )
        super().__init__(message)


def extract_code(raw: str) -> str:
    """Return the Python program contained in a model response.

    Prefers the first fenced block tagged ``python`` (or ``py``), then the
    first untagged fenced block. A response without fences is accepted as
    code when it starts like a Python module.

    Args:
        raw: Raw LLM response string.

    Returns:
        The program text, stripped, with a trailing newline.

    Raises:
        LLMOutputValidationError: If the response is empty or holds no code.
    """
    if raw is None or not raw.strip():
        raise LLMOutputValidationError(
            stage="empty",
            errors=["Model returned an empty response"],
            raw_response=raw or "",
        )

    blocks = _FENCE_RE.findall(raw)
    for language, body in blocks:
        if language.lower() in {"python", "py", "python3"} and body.strip():
            return body.strip() + "\n"
    for language, body in blocks:
        if not language and body.strip():
            return body.strip() + "\n"

    text = raw.strip()
    if not blocks and _ENTRY_HINT_RE.search(text) and text.lstrip().startswith(("def ", "from ", "import ", "#", '"""')):
        return text + "\n"

    raise LLMOutputValidationError(
        stage="no_code",
        errors=["Response does not contain a Python code block"],
        raw_response=raw,
    )
