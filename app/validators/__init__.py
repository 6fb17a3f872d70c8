"""
app/validators package marker.
"""

from app.validators.code_validator import CodeValidationError, CodeValidationResult, CodeValidator

__all__ = [
    "CodeValidationError",
    "CodeValidationResult",
    "CodeValidator",
]
