"""
Test suite for multi-disbursement handling

Tests adding tranches after generation, capping at the approved principal,
tranche reversal and the checks on tranche dates and amounts.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_schedule.currency import Money, Currency, sum_money
from loan_schedule.engine import LoanScheduleEngine
from loan_schedule.errors import ConfigurationError, RetroactiveMutationError, ScheduleValidationError
from loan_schedule.model import DisbursementPeriod
from loan_schedule.product import LoanProductConfig, LoanTerms
from loan_schedule.transactions import LoanTransaction, TransactionType


def usd(amount: str) -> Money:
    return Money(Decimal(amount), Currency.USD)


def total_principal(model) -> Money:
    return sum_money((p.principal_due for p in model.repayment_periods), Currency.USD)


class TestMultiDisbursement:
    """Test tranches added to a generated schedule"""

    def setup_method(self):
        """Set up a 15000 approval with 10000 disbursed up front"""
        self.engine = LoanScheduleEngine(
            LoanProductConfig(currency=Currency.USD, allow_multiple_disbursements=True)
        )
        terms = LoanTerms(usd('15000.00'), Decimal('0.12'), date(2024, 1, 1))
        self.model = self.engine.generate(terms, [DisbursementPeriod(date(2024, 1, 1), usd('10000.00'))])

    def test_remaining_principal(self):
        """Test undisbursed principal"""
        assert self.engine.disbursements.remaining_principal(self.model) == usd('5000.00')

    def test_tranche_capped_at_remaining_principal(self):
        """Test an oversized tranche is capped and the schedule amortizes it"""
        rebuilt = self.engine.add_disbursement(self.model, date(2024, 4, 10), usd('8000.00'))

        assert rebuilt.disbursement_periods[-1].amount == usd('5000.00')
        assert rebuilt.total_disbursed == usd('15000.00')
        assert total_principal(rebuilt) == usd('15000.00')
        assert rebuilt.repayment_periods[-1].closing_balance.is_zero()

    def test_fully_disbursed(self):
        """Test no tranche is accepted once the approval is used up"""
        rebuilt = self.engine.add_disbursement(self.model, date(2024, 4, 10), usd('5000.00'))
        with pytest.raises(ScheduleValidationError, match="fully disbursed"):
            self.engine.add_disbursement(rebuilt, date(2024, 5, 10), usd('100.00'))

    def test_invalid_tranches(self):
        """Test tranche amount, currency and date checks"""
        with pytest.raises(ScheduleValidationError, match="must be positive"):
            self.engine.add_disbursement(self.model, date(2024, 4, 10), usd('0'))
        with pytest.raises(ScheduleValidationError, match="currency"):
            self.engine.add_disbursement(self.model, date(2024, 4, 10),
                                         Money(Decimal('100'), Currency.EUR))
        with pytest.raises(ScheduleValidationError, match="on or after maturity"):
            self.engine.add_disbursement(self.model, date(2025, 1, 1), usd('100.00'))
        with pytest.raises(ScheduleValidationError, match="precedes"):
            self.engine.add_disbursement(self.model, date(2023, 12, 1), usd('100.00'))

    def test_reverse_tranche(self):
        """Test a reversed tranche stays recorded and leaves the schedule"""
        rebuilt = self.engine.add_disbursement(self.model, date(2024, 4, 10), usd('5000.00'))
        reversed_model = self.engine.reverse_disbursement(rebuilt, date(2024, 4, 10))

        assert len(reversed_model.disbursement_periods) == 2
        assert reversed_model.disbursement_periods[-1].reversed
        assert reversed_model.total_disbursed == usd('10000.00')
        assert total_principal(reversed_model) == usd('10000.00')
        assert reversed_model.repayment_periods[2] is rebuilt.repayment_periods[2]
        assert reversed_model.repayment_periods[3].disbursed_amount.is_zero()

    def test_reverse_unknown_or_only_tranche(self):
        """Test reversal of a missing tranche or of the last active one"""
        with pytest.raises(ScheduleValidationError, match="No active disbursement"):
            self.engine.reverse_disbursement(self.model, date(2024, 4, 10))
        with pytest.raises(ScheduleValidationError, match="At least one active disbursement"):
            self.engine.reverse_disbursement(self.model, date(2024, 1, 1))

    def test_tranche_inside_settled_period_refused(self):
        """Test a tranche dated inside a settled installment"""
        emi = self.model.repayment_periods[0].emi
        settled = self.engine.replay(self.model, [
            LoanTransaction("r1", TransactionType.REPAYMENT, date(2024, 2, 1), emi)
        ], business_date=date(2024, 2, 10)).model
        with pytest.raises(RetroactiveMutationError):
            self.engine.add_disbursement(settled, date(2024, 1, 20), usd('1000.00'))


class TestSingleDisbursementProduct:
    """Test products without multiple tranches"""

    def test_second_tranche_refused(self):
        """Test adding a tranche is a configuration error"""
        engine = LoanScheduleEngine(LoanProductConfig(currency=Currency.USD))
        model = engine.generate(LoanTerms(usd('10000.00'), Decimal('0.12'), date(2024, 1, 1)))
        with pytest.raises(ConfigurationError, match="multiple disbursements"):
            engine.add_disbursement(model, date(2024, 4, 10), usd('1000.00'))
