"""
Interest Calculation Module

Interest strategies for schedule builds. The strategy set is closed
(flat, declining balance, progressive); a product resolves to exactly one
strategy through the static ``INTEREST_STRATEGIES`` table, once per build.

A repayment period accrues interest over accrual segments: the period is
cut wherever the balance, the rate, the pause state or (under ACTUAL) the
year length changes, so that each segment has a single rate, balance and
days-in-year.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass
from typing import Dict, Sequence, Tuple
from enum import Enum

from .daycount import DayCountStrategy
from .errors import ScheduleValidationError
from .model import InterestScheduleModel
from .product import InterestMethod, LoanProductConfig, ScheduleType


class InterestStrategyType(Enum):
    """Closed set of interest strategies"""
    FLAT = "flat"
    DECLINING_BALANCE = "declining_balance"
    PROGRESSIVE = "progressive"


@dataclass(frozen=True)
class AccrualSegment:
    """A span of a repayment period with constant rate and balance"""
    start: date
    end: date
    annual_rate: Decimal
    days: int                   # Zero when interest is paused
    days_in_year: int
    principal_change: Decimal   # Net principal added since the period opened
    financed: Decimal           # Net principal financed to date
    paused: bool = False


@dataclass(frozen=True)
class PeriodAccrual:
    """Accrual segments of one repayment period"""
    from_date: date
    due_date: date
    segments: Tuple[AccrualSegment, ...]
    principal_change: Decimal   # Net principal added inside the period


def period_accrual(
    model: InterestScheduleModel,
    day_count: DayCountStrategy,
    from_date: date,
    due_date: date,
    first_period: bool = False
) -> PeriodAccrual:
    """
    Split a repayment period into accrual segments

    Args:
        model: Schedule model with rate periods, tranches, adjustments and pauses
        day_count: Day-count strategy of the product
        from_date: Period start (inclusive)
        due_date: Original due date (exclusive)
        first_period: Principal dated on ``from_date`` is opening balance

    Returns:
        PeriodAccrual for the period
    """
    events = model.principal_events()
    in_period = [
        (day, amount) for day, amount in events
        if (from_date < day if first_period else from_date <= day) and day < due_date
    ]

    cuts = {from_date, due_date}
    cuts.update(day for day, _ in in_period)
    cuts.update(r.effective_from for r in model.rate_periods)
    for pause in model.interest_pauses:
        cuts.add(pause.start_date)
        cuts.add(pause.end_date + timedelta(days=1))
    cuts.update(day_count.year_boundaries(from_date, due_date))
    points = sorted(day for day in cuts if from_date <= day <= due_date)

    segments = []
    for start, end in zip(points[:-1], points[1:]):
        paused = model.is_paused(start)
        days = 0 if paused else day_count.days_in_period(start, end)
        segments.append(AccrualSegment(
            start=start,
            end=end,
            annual_rate=model.rate_on(start),
            days=days,
            days_in_year=day_count.days_in_year(start, from_date, due_date),
            principal_change=sum((amount for day, amount in in_period if day <= start), Decimal('0')),
            financed=sum((amount for day, amount in events if day <= start), Decimal('0')),
            paused=paused,
        ))

    return PeriodAccrual(
        from_date=from_date,
        due_date=due_date,
        segments=tuple(segments),
        principal_change=sum((amount for _, amount in in_period), Decimal('0')),
    )


class InterestStrategy(ABC):
    """Base class for interest strategies"""

    strategy_type: InterestStrategyType

    @abstractmethod
    def interest_basis(self, outstanding: Decimal, financed: Decimal) -> Decimal:
        """Principal the rate applies to"""

    def compute_interest(self, outstanding: Decimal, annual_rate: Decimal,
                         days: int, days_in_year: int) -> Decimal:
        """
        Unrounded interest for a span

        Args:
            outstanding: Interest basis
            annual_rate: Annual rate as a fraction
            days: Interest-bearing days
            days_in_year: Days in year for the span

        Returns:
            Interest, rounded later when it becomes Money
        """
        if days <= 0 or annual_rate == Decimal('0'):
            return Decimal('0')
        return outstanding * annual_rate * Decimal(days) / Decimal(days_in_year)

    def period_interest(self, opening: Decimal, segments: Sequence[AccrualSegment]) -> Decimal:
        """Unrounded interest of a period given its opening balance"""
        total = Decimal('0')
        for segment in segments:
            basis = self.interest_basis(opening + segment.principal_change, segment.financed)
            total += self.compute_interest(basis, segment.annual_rate,
                                           segment.days, segment.days_in_year)
        return total


class FlatInterestStrategy(InterestStrategy):
    """Interest on total financed principal regardless of repayments"""

    strategy_type = InterestStrategyType.FLAT

    def interest_basis(self, outstanding: Decimal, financed: Decimal) -> Decimal:
        return financed


class DecliningBalanceInterestStrategy(InterestStrategy):
    """Interest on the outstanding balance"""

    strategy_type = InterestStrategyType.DECLINING_BALANCE

    def interest_basis(self, outstanding: Decimal, financed: Decimal) -> Decimal:
        return outstanding

    def compute_annuity(self, principal: Decimal, periodic_rate: Decimal, periods: int) -> Decimal:
        """
        Fixed installment for a fixed periodic rate (PMT)

        Formula: P * r / (1 - (1 + r)^-n), or P / n when r is zero
        """
        if periods <= 0:
            raise ScheduleValidationError("Annuity needs at least one period")
        if periodic_rate == Decimal('0'):
            return principal / Decimal(periods)
        factor = (Decimal('1') + periodic_rate) ** periods
        return principal * periodic_rate * factor / (factor - Decimal('1'))


class ProgressiveInterestStrategy(DecliningBalanceInterestStrategy):
    """
    Declining balance with an installment re-solved whenever the principal
    changes.

    The closing balance after a run of periods is linear in the installment,
    so two projections give the exact installment that repays the balance,
    with tranches, pauses and rate changes inside the run.
    """

    strategy_type = InterestStrategyType.PROGRESSIVE

    def project_closing_balance(self, opening: Decimal, periods: Sequence[PeriodAccrual],
                                installment: Decimal) -> Decimal:
        balance = opening
        for period in periods:
            interest = self.period_interest(balance, period.segments)
            balance = balance + period.principal_change - (installment - interest)
        return balance

    def compute_emi(self, opening: Decimal, periods: Sequence[PeriodAccrual]) -> Decimal:
        """
        Equal installment that leaves a zero balance after ``periods``

        Args:
            opening: Balance before the first period
            periods: Remaining repayment periods

        Returns:
            Unrounded installment
        """
        if not periods:
            raise ScheduleValidationError("EMI needs at least one remaining period")
        unpaid = self.project_closing_balance(opening, periods, Decimal('0'))
        slope = unpaid - self.project_closing_balance(opening, periods, Decimal('1'))
        if unpaid <= Decimal('0'):
            return Decimal('0')
        return unpaid / slope


INTEREST_STRATEGIES: Dict[InterestStrategyType, InterestStrategy] = {
    InterestStrategyType.FLAT: FlatInterestStrategy(),
    InterestStrategyType.DECLINING_BALANCE: DecliningBalanceInterestStrategy(),
    InterestStrategyType.PROGRESSIVE: ProgressiveInterestStrategy(),
}


def strategy_type_for(product: LoanProductConfig) -> InterestStrategyType:
    if product.schedule_type == ScheduleType.PROGRESSIVE:
        return InterestStrategyType.PROGRESSIVE
    if product.interest_method == InterestMethod.FLAT:
        return InterestStrategyType.FLAT
    return InterestStrategyType.DECLINING_BALANCE


def resolve_interest_strategy(product: LoanProductConfig) -> InterestStrategy:
    """Look up the strategy of a product"""
    return INTEREST_STRATEGIES[strategy_type_for(product)]

