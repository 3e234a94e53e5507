"""
Scheduled Date Generation Module

Produces the raw sequence of repayment due dates from a seed date and
frequency, and the holiday-aware variant that pairs each original due date
with its effective (working-day) date.
"""

from datetime import date
from dataclasses import dataclass
from typing import Iterator, List, Optional

from dateutil.relativedelta import relativedelta

from .business_calendar import BusinessCalendar
from .product import LoanTerms, PeriodFrequency


@dataclass(frozen=True)
class ScheduledDate:
    """
    A due date as scheduled and as effectively collected.

    Interest accrual uses ``original`` period boundaries; cash-flow
    expectations use ``effective``.
    """
    original: date
    effective: date

    @property
    def is_shifted(self) -> bool:
        return self.original != self.effective


class ScheduledDateGenerator:
    """
    Generates due dates anchored on one date, so month-end dates do not
    drift (31 Jan -> 29 Feb -> 31 Mar).
    """

    def __init__(
        self,
        start_date: date,
        frequency: PeriodFrequency,
        repayment_every: int = 1,
        first_repayment_date: Optional[date] = None
    ):
        if repayment_every <= 0:
            raise ValueError("Repayment every must be positive")
        self.start_date = start_date
        self.frequency = frequency
        self.repayment_every = repayment_every
        # Without an explicit first repayment date the series is anchored on the
        # start date, one step ahead
        if first_repayment_date:
            self.anchor_date = first_repayment_date
            self.anchor_offset = 0
        else:
            self.anchor_date = start_date
            self.anchor_offset = 1
        if self.due_date(0) <= start_date:
            raise ValueError("First repayment date must be after the start date")

    @classmethod
    def for_terms(cls, terms: LoanTerms) -> 'ScheduledDateGenerator':
        return cls(terms.disbursement_date, terms.repayment_frequency,
                   terms.repayment_every, terms.first_repayment_date)

    def _step(self, periods: int) -> relativedelta:
        count = periods * self.repayment_every
        if self.frequency == PeriodFrequency.DAYS:
            return relativedelta(days=count)
        elif self.frequency == PeriodFrequency.WEEKS:
            return relativedelta(weeks=count)
        elif self.frequency == PeriodFrequency.MONTHS:
            return relativedelta(months=count)
        elif self.frequency == PeriodFrequency.YEARS:
            return relativedelta(years=count)
        else:
            raise ValueError(f"Unsupported repayment frequency: {self.frequency}")

    def due_date(self, index: int) -> date:
        """Original due date of the installment at a 0-based index"""
        if index < 0:
            raise ValueError("Installment index must not be negative")
        return self.anchor_date + self._step(index + self.anchor_offset)

    def generate(self, count: int) -> List[date]:
        """First ``count`` due dates"""
        return [self.due_date(index) for index in range(count)]

    def iter_dates(self, start_index: int = 0) -> Iterator[date]:
        """Unbounded due dates; callers bound the iteration"""
        index = start_index
        while True:
            yield self.due_date(index)
            index += 1


class HolidayAwareScheduleGenerator:
    """Wraps a date generator and moves due dates off non-working days"""

    def __init__(self, generator: ScheduledDateGenerator, calendar: BusinessCalendar):
        self.generator = generator
        self.calendar = calendar

    def scheduled_date(self, index: int) -> ScheduledDate:
        original = self.generator.due_date(index)
        return ScheduledDate(original=original, effective=self.calendar.adjust(original))

    def generate(self, count: int) -> List[ScheduledDate]:
        return [self.scheduled_date(index) for index in range(count)]

    def iter_dates(self, start_index: int = 0) -> Iterator[ScheduledDate]:
        index = start_index
        while True:
            yield self.scheduled_date(index)
            index += 1
