"""
Business Calendar Module

Holiday and working-day calendar consumed by the schedule date generator.
Resolves whether a date is a non-working day and where a due date falling on
one is moved to. The calendar is read-only for the duration of a build.
"""

from datetime import date, timedelta
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional
from enum import Enum
import logging

from .config import get_settings
from .errors import ConfigurationError, LoopGuard

logger = logging.getLogger(__name__)


class RescheduleType(Enum):
    """Where a due date on a non-working day is moved to"""
    SAME_DAY = "same_day"
    MOVE_TO_NEXT_WORKING_DAY = "move_to_next_working_day"
    MOVE_TO_PREVIOUS_WORKING_DAY = "move_to_previous_working_day"
    MOVE_BY_DAYS = "move_by_days"  # Shift by a configured day count, repeated until a working day


@dataclass(frozen=True)
class Holiday:
    """A holiday range, optionally with an explicit date repayments move to"""
    name: str
    from_date: date
    to_date: date
    reschedule_to: Optional[date] = None

    def __post_init__(self):
        if self.to_date < self.from_date:
            raise ValueError(f"Holiday {self.name} ends before it starts")
        if self.reschedule_to and self.from_date <= self.reschedule_to <= self.to_date:
            raise ValueError(f"Holiday {self.name} reschedules repayments into itself")

    def covers(self, day: date) -> bool:
        return self.from_date <= day <= self.to_date


@dataclass(frozen=True)
class WorkingDays:
    """Weekly working-day pattern"""
    non_working_weekdays: FrozenSet[int] = frozenset()  # date.weekday(): 0=Monday .. 6=Sunday
    reschedule_type: RescheduleType = RescheduleType.MOVE_TO_NEXT_WORKING_DAY

    def __post_init__(self):
        if not all(0 <= day <= 6 for day in self.non_working_weekdays):
            raise ValueError("Weekdays must be between 0 (Monday) and 6 (Sunday)")
        if len(self.non_working_weekdays) == 7:
            raise ConfigurationError("At least one weekday must be a working day")


WEEKENDS = frozenset({5, 6})


class BusinessCalendar:
    """
    Holiday / working-day calendar with a configured shift policy
    """

    def __init__(
        self,
        holidays: Iterable[Holiday] = (),
        working_days: Optional[WorkingDays] = None,
        holiday_reschedule_type: RescheduleType = RescheduleType.MOVE_TO_NEXT_WORKING_DAY,
        shift_days: int = 1,
        max_iterations: Optional[int] = None
    ):
        if shift_days == 0:
            raise ConfigurationError("Shift days must be non-zero")
        self.holidays: List[Holiday] = sorted(holidays, key=lambda h: h.from_date)
        self.working_days = working_days or WorkingDays()
        self.holiday_reschedule_type = holiday_reschedule_type
        self.shift_days = shift_days
        self.max_iterations = max_iterations or get_settings().max_iterations

    def holiday_on(self, day: date) -> Optional[Holiday]:
        """Get the holiday covering a date, if any"""
        for holiday in self.holidays:
            if holiday.covers(day):
                return holiday
        return None

    def is_holiday(self, day: date) -> bool:
        return self.holiday_on(day) is not None

    def is_non_working_weekday(self, day: date) -> bool:
        return day.weekday() in self.working_days.non_working_weekdays

    def is_non_working_day(self, day: date) -> bool:
        """Check if a date is a holiday or a non-working weekday"""
        return self.is_holiday(day) or self.is_non_working_weekday(day)

    def next_working_day(self, day: date) -> date:
        """First working day strictly after ``day``"""
        guard = LoopGuard(self.max_iterations, "next working day search")
        candidate = day + timedelta(days=1)
        while self.is_non_working_day(candidate):
            guard.tick()
            candidate += timedelta(days=1)
        return candidate

    def previous_working_day(self, day: date) -> date:
        """Last working day strictly before ``day``"""
        guard = LoopGuard(self.max_iterations, "previous working day search")
        candidate = day - timedelta(days=1)
        while self.is_non_working_day(candidate):
            guard.tick()
            candidate -= timedelta(days=1)
        return candidate

    def adjust(self, due_date: date) -> date:
        """
        Effective due date for a scheduled due date

        Holidays are resolved first (explicit reschedule date, else the
        holiday policy), then non-working weekdays with the working-day
        policy. The next/previous working day policies skip holidays and
        weekends alike, so only explicit reschedule dates and MOVE_BY_DAYS
        need another pass. The loop repeats until a date is stable.

        Args:
            due_date: Original scheduled due date

        Returns:
            Effective due date

        Raises:
            IterationLimitExceeded: If the policies never settle on a working day
        """
        guard = LoopGuard(self.max_iterations, "due date adjustment")
        candidate = due_date
        while True:
            guard.tick()
            holiday = self.holiday_on(candidate)
            if holiday:
                if holiday.reschedule_to:
                    moved = holiday.reschedule_to
                else:
                    moved = self._shift(candidate, self.holiday_reschedule_type)
            elif self.is_non_working_weekday(candidate):
                moved = self._shift(candidate, self.working_days.reschedule_type)
            else:
                return candidate

            if moved == candidate:
                return candidate
            candidate = moved

    def _shift(self, day: date, reschedule_type: RescheduleType) -> date:
        if reschedule_type == RescheduleType.SAME_DAY:
            return day
        elif reschedule_type == RescheduleType.MOVE_TO_NEXT_WORKING_DAY:
            return self.next_working_day(day)
        elif reschedule_type == RescheduleType.MOVE_TO_PREVIOUS_WORKING_DAY:
            return self.previous_working_day(day)
        elif reschedule_type == RescheduleType.MOVE_BY_DAYS:
            return day + timedelta(days=self.shift_days)
        else:
            raise ConfigurationError(f"Unsupported reschedule type: {reschedule_type}")
