"""
Schedule Engine Errors

Distinguishable failure types for configuration, allocation, retroactive
mutation and runaway loops. All errors stop the build; no partial schedule
is ever returned.
"""

from datetime import date
from typing import Optional


class ScheduleError(ValueError):
    """Base class for all schedule engine errors"""


class ConfigurationError(ScheduleError):
    """Invalid product configuration, detected at validation time"""


class ScheduleValidationError(ScheduleError):
    """Malformed schedule mutation input (overlapping pauses, tranche after maturity, ...)"""


class AllocationError(ScheduleError):
    """A transaction could not be applied during replay"""

    def __init__(self, message: str, transaction_id: Optional[str] = None):
        if transaction_id:
            message = f"Transaction {transaction_id}: {message}"
        super().__init__(message)
        self.transaction_id = transaction_id


class RetroactiveMutationError(ScheduleError):
    """A mutation targets a date inside an already-settled installment"""

    def __init__(self, message: str, mutation_date: date):
        super().__init__(f"{message} (date {mutation_date.isoformat()})")
        self.mutation_date = mutation_date


class IterationLimitExceeded(ScheduleError):
    """The loop guard tripped; signals a logic or configuration defect"""

    def __init__(self, limit: int, context: str):
        super().__init__(f"{context} exceeded {limit} iterations")
        self.limit = limit
        self.context = context


class LoopGuard:
    """
    Counts iterations of a single loop and fails fast once a fixed
    maximum is exceeded.

    Usage:
        guard = LoopGuard(settings.max_iterations, "holiday shift")
        while not calendar.is_working_day(candidate):
            guard.tick()
            ...
    """

    def __init__(self, limit: int, context: str):
        if limit <= 0:
            raise ConfigurationError("Loop guard limit must be positive")
        self.limit = limit
        self.context = context
        self.count = 0

    def tick(self) -> None:
        self.count += 1
        if self.count > self.limit:
            raise IterationLimitExceeded(self.limit, self.context)
