"""
Progressive Loan Schedule Generator Module

Builds the repayment periods of a loan from its terms, tranches, rate
periods, pauses and charges, and rebuilds the schedule after a mutation.

A rebuild keeps every period before the first period due after the
mutation date as the same immutable objects and recomputes only the
suffix. Mutations reaching into a settled period are refused.
"""

from decimal import Decimal
from datetime import date, timedelta
from dataclasses import replace
from typing import List, Optional, Sequence
import logging

from .business_calendar import BusinessCalendar
from .config import EngineSettings, get_settings
from .currency import Money, sum_money
from .dates import HolidayAwareScheduleGenerator, ScheduledDateGenerator
from .daycount import DayCountStrategy
from .emi import EMICalculator
from .errors import ConfigurationError, RetroactiveMutationError, ScheduleValidationError
from .interest import resolve_interest_strategy
from .logging_config import log_action
from .model import (
    DisbursementPeriod, InterestPausePeriod, InterestScheduleModel, LoanCharge,
    PrincipalAdjustment, RatePeriod, RepaymentPeriod
)
from .product import LoanProductConfig, LoanTerms

logger = logging.getLogger(__name__)


class ProgressiveLoanScheduleGenerator:
    """
    Schedule builder for one product and calendar

    The interest strategy is resolved once, when the generator is created,
    and used unchanged for every build it runs.
    """

    def __init__(
        self,
        product: LoanProductConfig,
        calendar: BusinessCalendar,
        settings: Optional[EngineSettings] = None
    ):
        self.product = product
        self.calendar = calendar
        self.settings = settings or get_settings()
        self.day_count = DayCountStrategy.from_product(product)
        self.strategy = resolve_interest_strategy(product)
        self.emi_calculator = EMICalculator(product, self.strategy, self.day_count, self.settings)

    def create_model(
        self,
        terms: LoanTerms,
        disbursements: Optional[Sequence[DisbursementPeriod]] = None,
        rate_periods: Optional[Sequence[RatePeriod]] = None,
        pauses: Optional[Sequence[InterestPausePeriod]] = None,
        charges: Optional[Sequence[LoanCharge]] = None
    ) -> InterestScheduleModel:
        """
        Validated model without repayment periods

        Defaults: one tranche of the approved principal on the disbursement
        date, and the terms' rate from the disbursement date.
        """
        if terms.currency != self.product.currency:
            raise ConfigurationError(
                f"Loan currency {terms.currency.code} does not match product currency "
                f"{self.product.currency.code}"
            )

        if disbursements is None:
            disbursements = [DisbursementPeriod(terms.disbursement_date, terms.principal)]
        disbursements = sorted(disbursements, key=lambda d: d.disbursement_date)
        if not [d for d in disbursements if not d.reversed]:
            raise ScheduleValidationError("At least one active disbursement is required")
        for tranche in disbursements:
            if tranche.disbursement_date < terms.disbursement_date:
                raise ScheduleValidationError(
                    f"Disbursement on {tranche.disbursement_date.isoformat()} precedes the "
                    f"loan disbursement date"
                )
            if tranche.amount.currency != terms.currency:
                raise ScheduleValidationError("Disbursement currency does not match loan currency")

        rates = {terms.disbursement_date: RatePeriod(terms.disbursement_date, terms.annual_interest_rate)}
        for rate in rate_periods or []:
            if rate.effective_from < terms.disbursement_date:
                raise ScheduleValidationError("Rate period starts before the disbursement date")
            rates[rate.effective_from] = rate

        ordered_pauses = sorted(pauses or [], key=lambda p: p.start_date)
        for previous, pause in zip(ordered_pauses, ordered_pauses[1:]):
            if previous.overlaps(pause):
                raise ScheduleValidationError(
                    f"Interest pauses starting {previous.start_date.isoformat()} and "
                    f"{pause.start_date.isoformat()} overlap"
                )
        for pause in ordered_pauses:
            if pause.start_date < terms.disbursement_date:
                raise ScheduleValidationError("Interest pause starts before the disbursement date")

        ordered_charges = sorted(charges or [], key=lambda c: c.due_date)
        for charge in ordered_charges:
            if charge.due_date < terms.disbursement_date:
                raise ScheduleValidationError("Charge is due before the disbursement date")
            if charge.amount.currency != terms.currency:
                raise ScheduleValidationError("Charge currency does not match loan currency")

        return InterestScheduleModel(
            terms=terms,
            rate_periods=tuple(rates[day] for day in sorted(rates)),
            disbursement_periods=tuple(disbursements),
            interest_pauses=tuple(ordered_pauses),
            charges=tuple(ordered_charges),
        )

    def generate(
        self,
        terms: LoanTerms,
        disbursements: Optional[Sequence[DisbursementPeriod]] = None,
        rate_periods: Optional[Sequence[RatePeriod]] = None,
        pauses: Optional[Sequence[InterestPausePeriod]] = None,
        charges: Optional[Sequence[LoanCharge]] = None
    ) -> InterestScheduleModel:
        """Build a fresh schedule"""
        model = self.create_model(terms, disbursements, rate_periods, pauses, charges)
        model = self.rebuild(model, 0)
        if model.maturity_date:
            for pause in model.interest_pauses:
                if pause.end_date > model.maturity_date:
                    raise ScheduleValidationError("Interest pause extends beyond loan maturity")
            for tranche in model.active_disbursements:
                if tranche.disbursement_date >= model.maturity_date:
                    raise ScheduleValidationError("Disbursement is dated on or after loan maturity")
        return model

    def rebuild(self, model: InterestScheduleModel, start_index: int) -> InterestScheduleModel:
        """
        Recompute repayment periods from ``start_index`` onward

        Args:
            model: Schedule model with its inputs updated
            start_index: 0-based index of the first period to recompute

        Returns:
            New model sharing periods before ``start_index`` with the old one

        Raises:
            RetroactiveMutationError: If a settled period would be recomputed
        """
        if start_index < model.settled_count:
            period = model.repayment_periods[start_index]
            raise RetroactiveMutationError(
                f"Installment {period.number} is settled and cannot be recomputed",
                period.due_date
            )
        if not model.active_disbursements:
            raise ScheduleValidationError("At least one active disbursement is required")

        terms = model.terms
        prefix = model.repayment_periods[:start_index]
        if prefix:
            opening = prefix[-1].closing_balance
            from_date = prefix[-1].due_date
        else:
            opening = Money(sum(
                (amount for day, amount in model.principal_events() if day <= terms.disbursement_date),
                Decimal('0')
            ), model.currency)
            from_date = terms.disbursement_date

        dates = HolidayAwareScheduleGenerator(ScheduledDateGenerator.for_terms(terms), self.calendar)
        if terms.fixed_installment_amount is not None:
            suffix = self.emi_calculator.amortize_until_repaid(
                model, dates.iter_dates(start_index), start_index, opening, from_date,
                terms.fixed_installment_amount
            )
        else:
            scheduled = [dates.scheduled_date(index)
                         for index in range(start_index, terms.number_of_installments)]
            suffix = self.emi_calculator.amortize_term(model, scheduled, start_index, opening, from_date)

        suffix = self._apply_charges(model, list(prefix), suffix)
        log_action(logger, "info", "Repayment schedule rebuilt", action="rebuild",
                   resource="schedule",
                   extra={"start_index": start_index, "periods": len(prefix) + len(suffix)})
        return replace(model, repayment_periods=tuple(prefix) + tuple(suffix))

    @staticmethod
    def _apply_charges(model: InterestScheduleModel, prefix: List[RepaymentPeriod],
                       suffix: List[RepaymentPeriod]) -> List[RepaymentPeriod]:
        """Add charges falling in the rebuilt periods to their fee or penalty due"""
        periods = prefix + suffix
        if not periods:
            return suffix
        fees = {}
        penalties = {}
        for charge in model.charges:
            index = charge_period_index(periods, charge.due_date)
            if index < len(prefix):
                continue
            bucket = penalties if charge.penalty else fees
            bucket.setdefault(index, []).append(charge.amount)

        result = []
        for offset, period in enumerate(suffix):
            index = len(prefix) + offset
            if index in fees or index in penalties:
                period = replace(
                    period,
                    fee_due=sum_money(fees.get(index, []), model.currency),
                    penalty_due=sum_money(penalties.get(index, []), model.currency),
                )
            result.append(period)
        return result

    def check_mutation_date(self, model: InterestScheduleModel, day: date,
                            description: str, inclusive: bool = False) -> None:
        """
        Refuse mutations inside settled periods

        Args:
            model: Current schedule model
            day: Mutation date
            description: What is being changed, for the error message
            inclusive: Treat the last settled due date itself as settled

        Raises:
            RetroactiveMutationError: If ``day`` falls inside a settled period
        """
        settled_through = model.settled_through
        if settled_through is None:
            return
        if day < settled_through or (inclusive and day == settled_through):
            raise RetroactiveMutationError(
                f"{description} falls inside a settled installment", day
            )

    def _check_before_maturity(self, model: InterestScheduleModel, day: date, description: str) -> None:
        if day < model.terms.disbursement_date:
            raise ScheduleValidationError(f"{description} precedes the loan disbursement date")
        maturity = model.maturity_date
        if maturity is not None and day >= maturity:
            raise ScheduleValidationError(
                f"{description} on {day.isoformat()} is on or after maturity {maturity.isoformat()}"
            )

    def rebuild_from(self, model: InterestScheduleModel, day: date) -> InterestScheduleModel:
        """Rebuild from the first period due after ``day``"""
        index = model.period_index_for(day)
        if index is None:
            return model
        return self.rebuild(model, index)

    def outstanding_on(self, model: InterestScheduleModel, day: date) -> Money:
        """Scheduled principal outstanding at the end of ``day``"""
        index = model.period_index_for(day)
        if index is None:
            return model.zero()
        period = model.repayment_periods[index]
        changes = sum((
            amount for event_day, amount in model.principal_events()
            if period.from_date <= event_day <= day
            and not (index == 0 and event_day <= period.from_date)
        ), Decimal('0'))
        return period.opening_balance + Money(changes, model.currency)

    def insert_disbursement(self, model: InterestScheduleModel,
                            tranche: DisbursementPeriod) -> InterestScheduleModel:
        """Add a tranche and rebuild from the period it falls in"""
        self._check_before_maturity(model, tranche.disbursement_date, "Disbursement")
        self.check_mutation_date(model, tranche.disbursement_date, "Disbursement")
        disbursements = sorted(model.disbursement_periods + (tranche,),
                               key=lambda d: d.disbursement_date)
        updated = replace(model, disbursement_periods=tuple(disbursements))
        return self.rebuild_from(updated, tranche.disbursement_date)

    def replace_disbursement(self, model: InterestScheduleModel, position: int,
                             tranche: DisbursementPeriod) -> InterestScheduleModel:
        """Swap the tranche at ``position`` (reversal, down payment) and rebuild"""
        current = model.disbursement_periods[position]
        self.check_mutation_date(model, current.disbursement_date, "Disbursement change")
        disbursements = list(model.disbursement_periods)
        disbursements[position] = tranche
        updated = replace(model, disbursement_periods=tuple(disbursements))
        if not updated.active_disbursements:
            raise ScheduleValidationError("At least one active disbursement is required")
        return self.rebuild_from(updated, current.disbursement_date)

    def change_interest_rate(self, model: InterestScheduleModel, effective_from: date,
                             annual_rate: Decimal) -> InterestScheduleModel:
        """
        Apply a new annual rate from a date

        A rate period on the same date is replaced.
        """
        self._check_before_maturity(model, effective_from, "Rate change")
        self.check_mutation_date(model, effective_from, "Rate change")
        rates = {r.effective_from: r for r in model.rate_periods}
        rates[effective_from] = RatePeriod(effective_from, annual_rate)
        updated = replace(model, rate_periods=tuple(rates[day] for day in sorted(rates)))
        log_action(logger, "info", "Interest rate changed", action="change_interest_rate",
                   resource="rate_period",
                   extra={"effective_from": effective_from.isoformat(), "annual_rate": str(annual_rate)})
        return self.rebuild_from(updated, effective_from)

    def apply_interest_pause(self, model: InterestScheduleModel, start_date: date,
                             end_date: date) -> InterestScheduleModel:
        """Suspend interest accrual over an inclusive date range"""
        pause = InterestPausePeriod(start_date, end_date)
        self._check_before_maturity(model, start_date, "Interest pause")
        if model.maturity_date and end_date > model.maturity_date:
            raise ScheduleValidationError("Interest pause extends beyond loan maturity")
        for existing in model.interest_pauses:
            if existing.overlaps(pause):
                raise ScheduleValidationError(
                    f"Interest pause overlaps the pause starting {existing.start_date.isoformat()}"
                )
        self.check_mutation_date(model, start_date, "Interest pause")
        pauses = sorted(model.interest_pauses + (pause,), key=lambda p: p.start_date)
        updated = replace(model, interest_pauses=tuple(pauses))
        log_action(logger, "info", "Interest pause applied", action="apply_interest_pause",
                   resource="interest_pause",
                   extra={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()})
        return self.rebuild_from(updated, start_date)

    def terminate_interest_pause(self, model: InterestScheduleModel, start_date: date,
                                 termination_date: date) -> InterestScheduleModel:
        """
        End a pause early; interest accrues again from ``termination_date``

        A pause terminated on its start date is removed.
        """
        matches = [p for p in model.interest_pauses if p.start_date == start_date]
        if not matches:
            raise ScheduleValidationError(f"No interest pause starts on {start_date.isoformat()}")
        pause = matches[0]
        if not pause.covers(termination_date):
            raise ScheduleValidationError("Termination date must fall inside the interest pause")
        self.check_mutation_date(model, termination_date, "Interest pause termination")

        pauses = [p for p in model.interest_pauses if p is not pause]
        if termination_date > pause.start_date:
            pauses.append(InterestPausePeriod(pause.start_date, termination_date - timedelta(days=1)))
        pauses.sort(key=lambda p: p.start_date)
        updated = replace(model, interest_pauses=tuple(pauses))
        log_action(logger, "info", "Interest pause terminated", action="terminate_interest_pause",
                   resource="interest_pause",
                   extra={"start_date": start_date.isoformat(),
                          "termination_date": termination_date.isoformat()})
        return self.rebuild_from(updated, termination_date)

    def adjust_principal(self, model: InterestScheduleModel, adjustment_date: date,
                         amount: Money) -> InterestScheduleModel:
        """Reduce outstanding principal from a date"""
        adjustment = PrincipalAdjustment(adjustment_date, amount)
        self._check_before_maturity(model, adjustment_date, "Principal adjustment")
        self.check_mutation_date(model, adjustment_date, "Principal adjustment")
        outstanding = self.outstanding_on(model, adjustment_date)
        if amount > outstanding:
            raise ScheduleValidationError(
                f"Principal adjustment {amount.to_string()} exceeds outstanding "
                f"{outstanding.to_string()}"
            )
        adjustments = sorted(model.principal_adjustments + (adjustment,),
                             key=lambda a: a.adjustment_date)
        updated = replace(model, principal_adjustments=tuple(adjustments))
        log_action(logger, "info", "Principal adjusted", action="adjust_principal",
                   resource="principal_adjustment",
                   extra={"adjustment_date": adjustment_date.isoformat(), "amount": str(amount.amount)})
        return self.rebuild_from(updated, adjustment_date)

    def add_charge(self, model: InterestScheduleModel, charge: LoanCharge) -> InterestScheduleModel:
        """Add a fee or penalty to the installment it falls due in"""
        if charge.due_date < model.terms.disbursement_date:
            raise ScheduleValidationError("Charge is due before the disbursement date")
        if charge.amount.currency != model.currency:
            raise ScheduleValidationError("Charge currency does not match loan currency")
        self.check_mutation_date(model, charge.due_date, "Charge", inclusive=True)
        charges = sorted(model.charges + (charge,), key=lambda c: c.due_date)
        updated = replace(model, charges=tuple(charges))
        log_action(logger, "info", "Charge added", action="add_charge",
                   resource="charge",
                   extra={"due_date": charge.due_date.isoformat(), "amount": str(charge.amount.amount),
                          "penalty": charge.penalty})
        return self.rebuild(updated, charge_period_index(updated.repayment_periods, charge.due_date))


def charge_period_index(periods: Sequence[RepaymentPeriod], day: date) -> int:
    """Index of the period whose (from_date, due_date] contains ``day``; the last period after maturity"""
    for index, period in enumerate(periods):
        if day <= period.due_date:
            return index
    return len(periods) - 1
