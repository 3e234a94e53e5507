"""
Loan Product Module

Product configuration and loan terms consumed by the schedule engine, plus
the pre-save validation entry point that rejects invalid combinations before
any computation is attempted.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple
from enum import Enum

from .currency import Money, Currency
from .errors import ConfigurationError


class ScheduleType(Enum):
    """Amortization model"""
    CUMULATIVE = "cumulative"    # Amounts fixed at build time from a flat formula
    PROGRESSIVE = "progressive"  # EMI recalculated whenever principal changes


class InterestMethod(Enum):
    """Basis for interest accrual"""
    FLAT = "flat"                            # On total disbursed principal
    DECLINING_BALANCE = "declining_balance"  # On outstanding principal


class AmortizationMethod(Enum):
    """How principal is spread across installments"""
    EQUAL_INSTALLMENTS = "equal_installments"  # French method - equal payments
    EQUAL_PRINCIPAL = "equal_principal"        # Equal principal + declining interest


class DaysInYearType(Enum):
    """Days-in-year convention"""
    DAYS_360 = "days_360"
    DAYS_364 = "days_364"
    DAYS_365 = "days_365"
    ACTUAL = "actual"


class DaysInMonthType(Enum):
    """Days-in-period convention"""
    ACTUAL = "actual"    # Calendar days
    DAYS_30 = "days_30"  # 30E/360


class LeapYearStrategy(Enum):
    """Sub-strategy of the ACTUAL days-in-year convention"""
    FULL_LEAP_YEAR = "full_leap_year"          # 366 for any day of a leap year
    FEB_29_PERIOD_ONLY = "feb_29_period_only"  # 366 only if the period spans 29 February


class PeriodFrequency(Enum):
    """Repayment frequency unit"""
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"
    YEARS = "years"


class AllocationComponent(Enum):
    """Installment components in allocation precedence terms"""
    PENALTY = "penalty"
    FEE = "fee"
    INTEREST = "interest"
    PRINCIPAL = "principal"


DEFAULT_ALLOCATION_ORDER: Tuple[AllocationComponent, ...] = (
    AllocationComponent.PENALTY,
    AllocationComponent.FEE,
    AllocationComponent.INTEREST,
    AllocationComponent.PRINCIPAL,
)

# (schedule type, days-in-year type) pairs that accept a leap-year strategy.
# Kept as data: the product owners own this matrix.
LEAP_YEAR_STRATEGY_COMBINATIONS = {
    (ScheduleType.PROGRESSIVE, DaysInYearType.ACTUAL),
}


@dataclass(frozen=True)
class LoanProductConfig:
    """Product-level configuration of the schedule engine"""
    currency: Currency
    schedule_type: ScheduleType = ScheduleType.PROGRESSIVE
    interest_method: InterestMethod = InterestMethod.DECLINING_BALANCE
    amortization_method: AmortizationMethod = AmortizationMethod.EQUAL_INSTALLMENTS
    days_in_year_type: DaysInYearType = DaysInYearType.ACTUAL
    days_in_month_type: DaysInMonthType = DaysInMonthType.ACTUAL
    leap_year_strategy: Optional[LeapYearStrategy] = None
    installment_amount_in_multiples_of: Optional[Decimal] = None
    allow_multiple_disbursements: bool = False
    allocation_order: Tuple[AllocationComponent, ...] = DEFAULT_ALLOCATION_ORDER
    enable_down_payment: bool = False
    down_payment_percentage: Decimal = Decimal('0')
    down_payment_amount: Optional[Decimal] = None    # Fixed amount per tranche, instead of a percentage

    def validate(self) -> None:
        """
        Pre-save configuration check

        Raises:
            ConfigurationError: If the combination of settings is not allowed
        """
        if self.leap_year_strategy is not None:
            combination = (self.schedule_type, self.days_in_year_type)
            if combination not in LEAP_YEAR_STRATEGY_COMBINATIONS:
                raise ConfigurationError(
                    f"Leap year strategy {self.leap_year_strategy.value} is not allowed with "
                    f"schedule type {self.schedule_type.value} and days in year "
                    f"{self.days_in_year_type.value}"
                )

        if self.schedule_type == ScheduleType.PROGRESSIVE:
            if self.interest_method != InterestMethod.DECLINING_BALANCE:
                raise ConfigurationError("Progressive schedules require declining balance interest")
            if self.amortization_method != AmortizationMethod.EQUAL_INSTALLMENTS:
                raise ConfigurationError("Progressive schedules require equal installments")

        if self.installment_amount_in_multiples_of is not None:
            if self.installment_amount_in_multiples_of <= Decimal('0'):
                raise ConfigurationError("Installment multiple must be positive")

        if set(self.allocation_order) != set(AllocationComponent) \
                or len(self.allocation_order) != len(AllocationComponent):
            raise ConfigurationError(
                "Allocation order must list each of penalty, fee, interest and principal exactly once"
            )

        if self.enable_down_payment:
            if not (Decimal('0') <= self.down_payment_percentage <= Decimal('100')):
                raise ConfigurationError("Down payment percentage must be between 0 and 100")
            if self.down_payment_amount is not None:
                if self.down_payment_amount <= Decimal('0'):
                    raise ConfigurationError("Fixed down payment amount must be positive")
                if self.down_payment_percentage != Decimal('0'):
                    raise ConfigurationError(
                        "Down payment takes either a percentage or a fixed amount, not both"
                    )
        elif self.down_payment_percentage != Decimal('0') or self.down_payment_amount is not None:
            raise ConfigurationError("Down payment set but down payment is not enabled")

    def to_dict(self) -> Dict:
        """Convert to dictionary"""
        return {
            'currency': self.currency.code,
            'schedule_type': self.schedule_type.value,
            'interest_method': self.interest_method.value,
            'amortization_method': self.amortization_method.value,
            'days_in_year_type': self.days_in_year_type.value,
            'days_in_month_type': self.days_in_month_type.value,
            'leap_year_strategy': self.leap_year_strategy.value if self.leap_year_strategy else None,
            'installment_amount_in_multiples_of': (
                str(self.installment_amount_in_multiples_of)
                if self.installment_amount_in_multiples_of is not None else None
            ),
            'allow_multiple_disbursements': self.allow_multiple_disbursements,
            'allocation_order': [c.value for c in self.allocation_order],
            'enable_down_payment': self.enable_down_payment,
            'down_payment_percentage': str(self.down_payment_percentage),
            'down_payment_amount': (
                str(self.down_payment_amount) if self.down_payment_amount is not None else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'LoanProductConfig':
        """Convert dictionary to product configuration"""
        multiple = data.get('installment_amount_in_multiples_of')
        leap = data.get('leap_year_strategy')
        fixed_down_payment = data.get('down_payment_amount')
        return cls(
            currency=Currency[data['currency']],
            schedule_type=ScheduleType(data['schedule_type']),
            interest_method=InterestMethod(data['interest_method']),
            amortization_method=AmortizationMethod(data['amortization_method']),
            days_in_year_type=DaysInYearType(data['days_in_year_type']),
            days_in_month_type=DaysInMonthType(data['days_in_month_type']),
            leap_year_strategy=LeapYearStrategy(leap) if leap else None,
            installment_amount_in_multiples_of=Decimal(multiple) if multiple is not None else None,
            allow_multiple_disbursements=data['allow_multiple_disbursements'],
            allocation_order=tuple(AllocationComponent(c) for c in data['allocation_order']),
            enable_down_payment=data['enable_down_payment'],
            down_payment_percentage=Decimal(data['down_payment_percentage']),
            down_payment_amount=(
                Decimal(fixed_down_payment) if fixed_down_payment is not None else None
            ),
        )


@dataclass(frozen=True)
class LoanTerms:
    """Loan terms and conditions"""
    principal: Money                    # Approved principal
    annual_interest_rate: Decimal       # e.g., 0.12 for 12%
    disbursement_date: date             # Expected first disbursement
    repayment_frequency: PeriodFrequency = PeriodFrequency.MONTHS
    repayment_every: int = 1
    number_of_installments: int = 12
    first_repayment_date: Optional[date] = None
    fixed_installment_amount: Optional[Money] = None  # Derives the term instead of number_of_installments

    def __post_init__(self):
        if not isinstance(self.annual_interest_rate, Decimal):
            object.__setattr__(self, 'annual_interest_rate', Decimal(str(self.annual_interest_rate)))

        if not self.principal.is_positive():
            raise ValueError("Principal must be positive")
        if self.annual_interest_rate < Decimal('0') or self.annual_interest_rate > Decimal('1'):
            raise ValueError("Annual interest rate must be between 0 and 1 (0-100%)")
        if self.repayment_every <= 0:
            raise ValueError("Repayment every must be positive")
        if self.number_of_installments <= 0:
            raise ValueError("Number of installments must be positive")
        if self.first_repayment_date and self.first_repayment_date <= self.disbursement_date:
            raise ValueError("First repayment date must be after the disbursement date")
        if self.fixed_installment_amount is not None:
            if self.fixed_installment_amount.currency != self.principal.currency:
                raise ValueError("Fixed installment currency must match principal currency")
            if not self.fixed_installment_amount.is_positive():
                raise ValueError("Fixed installment amount must be positive")

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    def to_dict(self) -> Dict:
        """Convert to dictionary"""
        return {
            'principal_amount': str(self.principal.amount),
            'principal_currency': self.principal.currency.code,
            'annual_interest_rate': str(self.annual_interest_rate),
            'disbursement_date': self.disbursement_date.isoformat(),
            'repayment_frequency': self.repayment_frequency.value,
            'repayment_every': self.repayment_every,
            'number_of_installments': self.number_of_installments,
            'first_repayment_date': (
                self.first_repayment_date.isoformat() if self.first_repayment_date else None
            ),
            'fixed_installment_amount': (
                str(self.fixed_installment_amount.amount) if self.fixed_installment_amount else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'LoanTerms':
        """Convert dictionary to loan terms"""
        currency = Currency[data['principal_currency']]
        fixed = data.get('fixed_installment_amount')
        first = data.get('first_repayment_date')
        return cls(
            principal=Money(Decimal(data['principal_amount']), currency),
            annual_interest_rate=Decimal(data['annual_interest_rate']),
            disbursement_date=date.fromisoformat(data['disbursement_date']),
            repayment_frequency=PeriodFrequency(data['repayment_frequency']),
            repayment_every=data['repayment_every'],
            number_of_installments=data['number_of_installments'],
            first_repayment_date=date.fromisoformat(first) if first else None,
            fixed_installment_amount=Money(Decimal(fixed), currency) if fixed else None,
        )
