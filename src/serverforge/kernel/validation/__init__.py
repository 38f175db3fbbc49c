"""Static validation of generated handler code."""

from serverforge.kernel.validation.code_validator import (
    DISALLOWED_PATTERNS,
    CodeValidator,
    ValidationReport,
    get_code_validator,
    validate_code,
)

__all__ = [
    "CodeValidator",
    "DISALLOWED_PATTERNS",
    "ValidationReport",
    "get_code_validator",
    "validate_code",
]
