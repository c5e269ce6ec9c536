"""Weekly allowance processing package."""

from kidsbank.allowance.scheduler import (
    ALLOWANCE_COMMENT,
    SYSTEM_ACTOR,
    AllowanceProcessingError,
    AllowanceRunResult,
    AllowanceScheduler,
    AllowanceTimeoutError,
    missed_allowance_dates,
)

__all__ = [
    "ALLOWANCE_COMMENT",
    "SYSTEM_ACTOR",
    "AllowanceProcessingError",
    "AllowanceRunResult",
    "AllowanceScheduler",
    "AllowanceTimeoutError",
    "missed_allowance_dates",
]
