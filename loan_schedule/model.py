"""
Interest Schedule Model Module

The full recomputable state of a loan schedule: rate periods, disbursement
periods, interest pauses, principal adjustments, charges and the derived
repayment periods. Every type is immutable; a rebuild returns a new model
that shares the settled prefix with the old one.

The snapshot produced by ``to_dict`` is a JSON-compatible document and
round-trips losslessly through ``from_dict``.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple

from .currency import Money, Currency, sum_money
from .product import LoanTerms

SNAPSHOT_VERSION = 1


@dataclass(frozen=True)
class RatePeriod:
    """Annual interest rate effective from a date"""
    effective_from: date
    annual_rate: Decimal

    def __post_init__(self):
        if not isinstance(self.annual_rate, Decimal):
            object.__setattr__(self, 'annual_rate', Decimal(str(self.annual_rate)))
        if self.annual_rate < Decimal('0') or self.annual_rate > Decimal('1'):
            raise ValueError("Annual interest rate must be between 0 and 1 (0-100%)")


@dataclass(frozen=True)
class DisbursementPeriod:
    """A disbursed tranche; never deleted, only marked reversed"""
    disbursement_date: date
    amount: Money
    down_payment: Optional[Money] = None
    reversed: bool = False

    def __post_init__(self):
        if not self.amount.is_positive():
            raise ValueError("Disbursement amount must be positive")
        if self.down_payment is None:
            object.__setattr__(self, 'down_payment', Money.zero(self.amount.currency))
        if self.down_payment.currency != self.amount.currency:
            raise ValueError("Down payment currency must match disbursement currency")
        if self.down_payment.is_negative() or self.down_payment > self.amount:
            raise ValueError("Down payment must be between zero and the disbursed amount")

    @property
    def net_amount(self) -> Money:
        """Principal that enters the schedule"""
        return self.amount - self.down_payment


@dataclass(frozen=True)
class InterestPausePeriod:
    """Inclusive date range during which no interest accrues"""
    start_date: date
    end_date: date

    def __post_init__(self):
        if self.end_date < self.start_date:
            raise ValueError("Interest pause ends before it starts")

    def covers(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date

    def overlaps(self, other: 'InterestPausePeriod') -> bool:
        return self.start_date <= other.end_date and other.start_date <= self.end_date


@dataclass(frozen=True)
class PrincipalAdjustment:
    """Outstanding principal reduced from a date (waived or adjusted principal)"""
    adjustment_date: date
    amount: Money

    def __post_init__(self):
        if not self.amount.is_positive():
            raise ValueError("Principal adjustment must be positive")


@dataclass(frozen=True)
class LoanCharge:
    """A fee or penalty due on a date"""
    due_date: date
    amount: Money
    penalty: bool = False
    name: str = ""

    def __post_init__(self):
        if not self.amount.is_positive():
            raise ValueError("Charge amount must be positive")


@dataclass(frozen=True)
class RepaymentPeriod:
    """One scheduled installment"""
    number: int
    from_date: date
    due_date: date               # Original due date, interest boundary
    effective_due_date: date     # Working-day due date, cash-flow expectation
    opening_balance: Money
    disbursed_amount: Money      # Tranches net of adjustments inside the period
    principal_due: Money
    interest_due: Money
    fee_due: Money
    penalty_due: Money
    emi: Money                   # Scheduled principal + interest
    settled: bool = False

    @property
    def closing_balance(self) -> Money:
        return self.opening_balance + self.disbursed_amount - self.principal_due

    @property
    def total_due(self) -> Money:
        return self.principal_due + self.interest_due + self.fee_due + self.penalty_due


@dataclass(frozen=True)
class InterestScheduleModel:
    """Recomputable schedule state of one loan"""
    terms: LoanTerms
    rate_periods: Tuple[RatePeriod, ...]
    disbursement_periods: Tuple[DisbursementPeriod, ...]
    interest_pauses: Tuple[InterestPausePeriod, ...] = ()
    principal_adjustments: Tuple[PrincipalAdjustment, ...] = ()
    charges: Tuple[LoanCharge, ...] = ()
    repayment_periods: Tuple[RepaymentPeriod, ...] = ()

    @property
    def currency(self) -> Currency:
        return self.terms.currency

    def zero(self) -> Money:
        return Money.zero(self.currency)

    @property
    def active_disbursements(self) -> List[DisbursementPeriod]:
        return [d for d in self.disbursement_periods if not d.reversed]

    @property
    def first_disbursement_date(self) -> date:
        active = self.active_disbursements
        if not active:
            raise ValueError("Schedule has no active disbursement")
        return active[0].disbursement_date

    @property
    def total_disbursed(self) -> Money:
        """Gross disbursed principal"""
        return sum_money((d.amount for d in self.active_disbursements), self.currency)

    @property
    def total_net_principal(self) -> Money:
        """Principal the schedule must amortize"""
        net = sum_money((d.net_amount for d in self.active_disbursements), self.currency)
        adjusted = sum_money((a.amount for a in self.principal_adjustments), self.currency)
        return net - adjusted

    def principal_events(self) -> List[Tuple[date, Decimal]]:
        """Dated changes of financed principal: net tranches and adjustments"""
        events = [(d.disbursement_date, d.net_amount.amount) for d in self.active_disbursements]
        events.extend((a.adjustment_date, -a.amount.amount) for a in self.principal_adjustments)
        return sorted(events, key=lambda event: event[0])

    @property
    def maturity_date(self) -> Optional[date]:
        if not self.repayment_periods:
            return None
        return self.repayment_periods[-1].due_date

    def rate_on(self, day: date) -> Decimal:
        """Annual rate effective on a date"""
        rate = self.rate_periods[0].annual_rate
        for period in self.rate_periods:
            if period.effective_from <= day:
                rate = period.annual_rate
            else:
                break
        return rate

    def is_paused(self, day: date) -> bool:
        return any(pause.covers(day) for pause in self.interest_pauses)

    @property
    def settled_count(self) -> int:
        """Number of leading settled repayment periods"""
        count = 0
        for period in self.repayment_periods:
            if not period.settled:
                break
            count += 1
        return count

    @property
    def settled_through(self) -> Optional[date]:
        """Due date of the last settled period, if any"""
        count = self.settled_count
        if count == 0:
            return None
        return self.repayment_periods[count - 1].due_date

    def period_index_for(self, day: date) -> Optional[int]:
        """Index of the first period whose due date is after ``day``"""
        for index, period in enumerate(self.repayment_periods):
            if period.due_date > day:
                return index
        return None

    def with_settled(self, flags: List[bool]) -> 'InterestScheduleModel':
        """New model with settled flags replaced"""
        if len(flags) != len(self.repayment_periods):
            raise ValueError("One settled flag is required per repayment period")
        periods = tuple(
            period if period.settled == flag else replace(period, settled=flag)
            for period, flag in zip(self.repayment_periods, flags)
        )
        return replace(self, repayment_periods=periods)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-compatible snapshot"""
        return {
            'version': SNAPSHOT_VERSION,
            'currency': self.currency.code,
            'terms': self.terms.to_dict(),
            'rate_periods': [
                {'effective_from': r.effective_from.isoformat(), 'annual_rate': str(r.annual_rate)}
                for r in self.rate_periods
            ],
            'disbursement_periods': [
                {
                    'disbursement_date': d.disbursement_date.isoformat(),
                    'amount': str(d.amount.amount),
                    'down_payment': str(d.down_payment.amount),
                    'reversed': d.reversed,
                }
                for d in self.disbursement_periods
            ],
            'interest_pauses': [
                {'start_date': p.start_date.isoformat(), 'end_date': p.end_date.isoformat()}
                for p in self.interest_pauses
            ],
            'principal_adjustments': [
                {'adjustment_date': a.adjustment_date.isoformat(), 'amount': str(a.amount.amount)}
                for a in self.principal_adjustments
            ],
            'charges': [
                {
                    'due_date': c.due_date.isoformat(),
                    'amount': str(c.amount.amount),
                    'penalty': c.penalty,
                    'name': c.name,
                }
                for c in self.charges
            ],
            'repayment_periods': [self._period_to_dict(p) for p in self.repayment_periods],
        }

    @staticmethod
    def _period_to_dict(period: RepaymentPeriod) -> Dict[str, Any]:
        result = {
            'number': period.number,
            'from_date': period.from_date.isoformat(),
            'due_date': period.due_date.isoformat(),
            'effective_due_date': period.effective_due_date.isoformat(),
            'settled': period.settled,
        }
        for name in ['opening_balance', 'disbursed_amount', 'principal_due', 'interest_due',
                     'fee_due', 'penalty_due', 'emi']:
            result[name] = str(getattr(period, name).amount)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InterestScheduleModel':
        """Rebuild a model from a snapshot"""
        if data.get('version') != SNAPSHOT_VERSION:
            raise ValueError(f"Unsupported snapshot version: {data.get('version')}")

        currency = Currency[data['currency']]

        def money(value: str) -> Money:
            return Money(Decimal(value), currency)

        def day(value: str) -> date:
            return date.fromisoformat(value)

        periods = []
        for p in data['repayment_periods']:
            periods.append(RepaymentPeriod(
                number=p['number'],
                from_date=day(p['from_date']),
                due_date=day(p['due_date']),
                effective_due_date=day(p['effective_due_date']),
                opening_balance=money(p['opening_balance']),
                disbursed_amount=money(p['disbursed_amount']),
                principal_due=money(p['principal_due']),
                interest_due=money(p['interest_due']),
                fee_due=money(p['fee_due']),
                penalty_due=money(p['penalty_due']),
                emi=money(p['emi']),
                settled=p['settled'],
            ))

        return cls(
            terms=LoanTerms.from_dict(data['terms']),
            rate_periods=tuple(
                RatePeriod(day(r['effective_from']), Decimal(r['annual_rate']))
                for r in data['rate_periods']
            ),
            disbursement_periods=tuple(
                DisbursementPeriod(
                    disbursement_date=day(d['disbursement_date']),
                    amount=money(d['amount']),
                    down_payment=money(d['down_payment']),
                    reversed=d['reversed'],
                )
                for d in data['disbursement_periods']
            ),
            interest_pauses=tuple(
                InterestPausePeriod(day(p['start_date']), day(p['end_date']))
                for p in data['interest_pauses']
            ),
            principal_adjustments=tuple(
                PrincipalAdjustment(day(a['adjustment_date']), money(a['amount']))
                for a in data['principal_adjustments']
            ),
            charges=tuple(
                LoanCharge(day(c['due_date']), money(c['amount']), c['penalty'], c['name'])
                for c in data['charges']
            ),
            repayment_periods=tuple(periods),
        )
