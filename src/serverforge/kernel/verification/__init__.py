"""Verification of candidate versions before acceptance."""

from serverforge.kernel.verification.smoke_runner import (
    CHECK_ORDER,
    NOT_RUN_MESSAGE,
    CheckResult,
    SmokeTestReport,
    SmokeTestRunner,
)

__all__ = [
    "CHECK_ORDER",
    "NOT_RUN_MESSAGE",
    "CheckResult",
    "SmokeTestReport",
    "SmokeTestRunner",
]
