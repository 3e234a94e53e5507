"""
Day-Count Strategy Module

Converts calendar spans into year fractions for interest computation under
the 360 / 364 / 365 / ACTUAL conventions, including the leap-year
sub-strategies of ACTUAL.
"""

from decimal import Decimal
from datetime import date
from typing import List, Optional, Tuple
import calendar

from .product import DaysInYearType, DaysInMonthType, LeapYearStrategy, LoanProductConfig


FIXED_DAYS_IN_YEAR = {
    DaysInYearType.DAYS_360: 360,
    DaysInYearType.DAYS_364: 364,
    DaysInYearType.DAYS_365: 365,
}


def period_contains_feb_29(year: int, period_from: date, period_due: date) -> bool:
    """True if 29 February of ``year`` lies in (period_from, period_due]"""
    if not calendar.isleap(year):
        return False
    leap_day = date(year, 2, 29)
    return period_from < leap_day <= period_due


def days_in_year(
    convention: DaysInYearType,
    leap_year_strategy: Optional[LeapYearStrategy],
    on_date: date,
    period_from: Optional[date] = None,
    period_due: Optional[date] = None
) -> int:
    """
    Number of days in the year for interest accrued on ``on_date``

    Args:
        convention: Days-in-year convention
        leap_year_strategy: ACTUAL sub-strategy (None behaves as FULL_LEAP_YEAR)
        on_date: Date the accrual falls on
        period_from: Start of the enclosing repayment period
        period_due: Due date of the enclosing repayment period

    Returns:
        Days in year
    """
    if convention in FIXED_DAYS_IN_YEAR:
        return FIXED_DAYS_IN_YEAR[convention]

    if not calendar.isleap(on_date.year):
        return 365

    if leap_year_strategy == LeapYearStrategy.FEB_29_PERIOD_ONLY:
        if period_from is None or period_due is None:
            raise ValueError("FEB_29_PERIOD_ONLY needs the repayment period boundaries")
        return 366 if period_contains_feb_29(on_date.year, period_from, period_due) else 365

    return 366


def days_in_period(start: date, end: date,
                   days_in_month_type: DaysInMonthType = DaysInMonthType.ACTUAL) -> int:
    """Days between two dates under the days-in-month convention"""
    if days_in_month_type == DaysInMonthType.ACTUAL:
        return (end - start).days

    # 30/360 with every month ending on day 30
    return (360 * (end.year - start.year)
            + 30 * (end.month - start.month)
            + (thirty_day_month_day(end) - thirty_day_month_day(start)))


def thirty_day_month_day(day: date) -> int:
    """Day of month on a 30-day month; the last day of any month is day 30"""
    if day.day == calendar.monthrange(day.year, day.month)[1]:
        return 30
    return min(day.day, 30)


class DayCountStrategy:
    """Day-count convention bound to one product configuration"""

    def __init__(
        self,
        days_in_year_type: DaysInYearType,
        days_in_month_type: DaysInMonthType = DaysInMonthType.ACTUAL,
        leap_year_strategy: Optional[LeapYearStrategy] = None
    ):
        self.days_in_year_type = days_in_year_type
        self.days_in_month_type = days_in_month_type
        self.leap_year_strategy = leap_year_strategy

    @classmethod
    def from_product(cls, product: LoanProductConfig) -> 'DayCountStrategy':
        return cls(product.days_in_year_type, product.days_in_month_type, product.leap_year_strategy)

    def days_in_year(self, on_date: date, period_from: Optional[date] = None,
                     period_due: Optional[date] = None) -> int:
        return days_in_year(self.days_in_year_type, self.leap_year_strategy,
                            on_date, period_from, period_due)

    def days_in_period(self, start: date, end: date) -> int:
        return days_in_period(start, end, self.days_in_month_type)

    def year_boundaries(self, start: date, end: date) -> List[date]:
        """1 January dates strictly inside (start, end) when days-in-year depends on the year"""
        if self.days_in_year_type != DaysInYearType.ACTUAL:
            return []
        return [date(year, 1, 1) for year in range(start.year + 1, end.year + 1)
                if start < date(year, 1, 1) < end]

    def split_by_year(self, start: date, end: date) -> List[Tuple[date, date]]:
        points = [start] + self.year_boundaries(start, end) + [end]
        return list(zip(points[:-1], points[1:]))

    def year_fraction(self, start: date, end: date, period_from: date, period_due: date) -> Decimal:
        """
        Fraction of a year between ``start`` and ``end``, split at year
        boundaries under ACTUAL so each part uses its own year length.
        """
        fraction = Decimal('0')
        for part_start, part_end in self.split_by_year(start, end):
            days = self.days_in_period(part_start, part_end)
            year_days = self.days_in_year(part_start, period_from, period_due)
            fraction += Decimal(days) / Decimal(year_days)
        return fraction
