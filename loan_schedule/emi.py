"""
EMI Calculator Module

Amortizes a run of repayment periods: interest on the opening balance over
the original period boundaries, principal from the installment (or an equal
share of what is left), and the last period absorbing every rounding
residue so the balance closes at exactly zero.

All arithmetic runs in a local decimal context with banker's rounding;
each derived amount is rounded once, when it becomes Money.
"""

from decimal import Decimal, Context, ROUND_HALF_EVEN, localcontext
from datetime import date
from typing import Iterable, List, Optional, Sequence
import logging

from .config import EngineSettings, get_settings
from .currency import Money, round_to_multiple
from .daycount import DayCountStrategy, FIXED_DAYS_IN_YEAR
from .dates import ScheduledDate
from .errors import LoopGuard
from .interest import (
    InterestStrategy, InterestStrategyType, PeriodAccrual, period_accrual
)
from .model import InterestScheduleModel, RepaymentPeriod
from .product import AmortizationMethod, LoanProductConfig, PeriodFrequency

logger = logging.getLogger(__name__)


def periodic_rate(annual_rate: Decimal, frequency: PeriodFrequency, every: int,
                  day_count: DayCountStrategy) -> Decimal:
    """Nominal rate of one repayment period"""
    if frequency == PeriodFrequency.MONTHS:
        return annual_rate * Decimal(every) / Decimal('12')
    elif frequency == PeriodFrequency.YEARS:
        return annual_rate * Decimal(every)

    year_days = Decimal(FIXED_DAYS_IN_YEAR.get(day_count.days_in_year_type, 365))
    if frequency == PeriodFrequency.WEEKS:
        return annual_rate * Decimal(7 * every) / year_days
    return annual_rate * Decimal(every) / year_days


class EMICalculator:
    """
    Per-period amortization for one product and strategy
    """

    def __init__(
        self,
        product: LoanProductConfig,
        strategy: InterestStrategy,
        day_count: DayCountStrategy,
        settings: Optional[EngineSettings] = None
    ):
        self.product = product
        self.strategy = strategy
        self.day_count = day_count
        self.settings = settings or get_settings()
        self.context = Context(prec=self.settings.decimal_precision, rounding=ROUND_HALF_EVEN)

    @property
    def equal_principal(self) -> bool:
        return (self.product.amortization_method == AmortizationMethod.EQUAL_PRINCIPAL
                or self.strategy.strategy_type == InterestStrategyType.FLAT)

    def installment_amount(self, amount: Decimal) -> Money:
        """Round an installment to currency and to the configured multiple"""
        money = Money(amount, self.product.currency)
        if self.product.installment_amount_in_multiples_of:
            money = round_to_multiple(money, self.product.installment_amount_in_multiples_of)
        return money

    def calculate_emi(self, opening: Money, accruals: Sequence[PeriodAccrual]) -> Money:
        """
        Progressive installment for the remaining periods

        Args:
            opening: Balance before the first remaining period
            accruals: Accrual segments of the remaining periods

        Returns:
            Installment rounded to currency and installment multiple
        """
        with localcontext(self.context):
            emi = self.installment_amount(self.strategy.compute_emi(opening.amount, accruals))
        logger.debug(f"EMI {emi.to_string()} over {len(accruals)} periods "
                     f"from {accruals[0].from_date.isoformat()}")
        return emi

    def calculate_annuity(self, model: InterestScheduleModel, available: Money,
                          remaining: int, from_date: date) -> Money:
        """Cumulative installment from the fixed periodic rate"""
        terms = model.terms
        with localcontext(self.context):
            rate = periodic_rate(model.rate_on(from_date), terms.repayment_frequency,
                                 terms.repayment_every, self.day_count)
            return self.installment_amount(
                self.strategy.compute_annuity(available.amount, rate, remaining)
            )

    def amortize_term(
        self,
        model: InterestScheduleModel,
        scheduled_dates: Sequence[ScheduledDate],
        start_index: int,
        opening: Money,
        from_date: date
    ) -> List[RepaymentPeriod]:
        """
        Amortize a fixed number of remaining periods

        Args:
            model: Schedule model being built
            scheduled_dates: Due dates of the remaining periods
            start_index: 0-based index of the first remaining period
            opening: Balance before the first remaining period
            from_date: Start of the first remaining period

        Returns:
            Repayment periods, the last one closing at zero
        """
        accruals = []
        period_from = from_date
        for offset, scheduled in enumerate(scheduled_dates):
            accruals.append(period_accrual(model, self.day_count, period_from, scheduled.original,
                                           first_period=start_index + offset == 0))
            period_from = scheduled.original
        if not accruals:
            return []

        emi = None
        if self.strategy.strategy_type == InterestStrategyType.PROGRESSIVE:
            emi = self.calculate_emi(opening, accruals)

        guard = LoopGuard(self.settings.max_iterations, "repayment period amortization")
        periods = []
        balance = opening
        with localcontext(self.context):
            for offset, (scheduled, accrual) in enumerate(zip(scheduled_dates, accruals)):
                guard.tick()
                remaining = len(accruals) - offset
                disbursed = Money(accrual.principal_change, model.currency)
                available = balance + disbursed
                interest = Money(self.strategy.period_interest(balance.amount, accrual.segments),
                                 model.currency)

                if remaining == 1:
                    principal = available
                elif self.equal_principal:
                    principal = available / remaining
                else:
                    progressive = self.strategy.strategy_type == InterestStrategyType.PROGRESSIVE
                    if not progressive and (offset == 0 or not disbursed.is_zero()):
                        emi = self.calculate_annuity(model, available, remaining, accrual.from_date)
                    principal = self._bounded(emi - interest, available)

                period = self._repayment_period(start_index + offset, accrual, scheduled,
                                                balance, disbursed, principal, interest)
                periods.append(period)
                balance = period.closing_balance

        return periods

    def amortize_until_repaid(
        self,
        model: InterestScheduleModel,
        scheduled_dates: Iterable[ScheduledDate],
        start_index: int,
        opening: Money,
        from_date: date,
        installment: Money
    ) -> List[RepaymentPeriod]:
        """
        Derive the term from a fixed installment

        Periods are generated until the balance is repaid and no tranche or
        adjustment is still to come. An installment that never reduces the
        balance trips the loop guard.

        Raises:
            IterationLimitExceeded: If the balance is not repaid within the guard limit
        """
        event_dates = [day for day, _ in model.principal_events()]
        guard = LoopGuard(self.settings.max_iterations, "fixed installment term derivation")
        periods = []
        balance = opening
        period_from = from_date
        with localcontext(self.context):
            for offset, scheduled in enumerate(scheduled_dates):
                guard.tick()
                index = start_index + offset
                accrual = period_accrual(model, self.day_count, period_from, scheduled.original,
                                         first_period=index == 0)
                disbursed = Money(accrual.principal_change, model.currency)
                available = balance + disbursed
                interest = Money(self.strategy.period_interest(balance.amount, accrual.segments),
                                 model.currency)

                if self.equal_principal:
                    principal = self._bounded(installment, available)
                else:
                    principal = self._bounded(installment - interest, available)

                period = self._repayment_period(index, accrual, scheduled,
                                                balance, disbursed, principal, interest)
                periods.append(period)
                balance = period.closing_balance
                pending = any(day >= scheduled.original for day in event_dates)
                if balance.is_zero() and not pending:
                    break
                period_from = scheduled.original

        return periods

    @staticmethod
    def _bounded(principal: Money, available: Money) -> Money:
        if principal.is_negative():
            return Money.zero(principal.currency)
        return principal.min(available.max(Money.zero(available.currency)))

    @staticmethod
    def _repayment_period(index: int, accrual: PeriodAccrual, scheduled: ScheduledDate,
                          opening: Money, disbursed: Money, principal: Money,
                          interest: Money) -> RepaymentPeriod:
        zero = Money.zero(opening.currency)
        return RepaymentPeriod(
            number=index + 1,
            from_date=accrual.from_date,
            due_date=scheduled.original,
            effective_due_date=scheduled.effective,
            opening_balance=opening,
            disbursed_amount=disbursed,
            principal_due=principal,
            interest_due=interest,
            fee_due=zero,
            penalty_due=zero,
            emi=principal + interest,
        )
