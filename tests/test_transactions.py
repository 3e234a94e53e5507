"""
Test suite for transaction processing

Tests repayment allocation order and carry-forward, reversals as log
entries, waivers, charge-off and recovery, and rejection of invalid logs.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_schedule.currency import Money, Currency
from loan_schedule.engine import LoanScheduleEngine
from loan_schedule.errors import AllocationError
from loan_schedule.model import LoanCharge
from loan_schedule.product import AllocationComponent, LoanProductConfig, LoanTerms
from loan_schedule.transactions import (
    EnhancedTransactionProcessor, LoanTransaction, TransactionType
)


def usd(amount: str) -> Money:
    return Money(Decimal(amount), Currency.USD)


def repayment(transaction_id: str, day: date, amount: str, sequence: int = 0) -> LoanTransaction:
    return LoanTransaction(transaction_id, TransactionType.REPAYMENT, day, usd(amount), sequence)


def reversal(transaction_id: str, day: date, target: str) -> LoanTransaction:
    return LoanTransaction(transaction_id, TransactionType.REVERSAL, day, reverses_id=target)


def chargeback(transaction_id: str, day: date, target: str, amount: str = None) -> LoanTransaction:
    return LoanTransaction(transaction_id, TransactionType.CHARGEBACK, day,
                           usd(amount) if amount else None, reverses_id=target)


class TestLoanTransaction:
    """Test transaction construction"""

    def test_reversal_requires_target(self):
        """Test reversals must reference the reversed transaction"""
        with pytest.raises(ValueError, match="must reference"):
            LoanTransaction("t1", TransactionType.REVERSAL, date(2024, 2, 1))
        with pytest.raises(ValueError, match="Only reversals"):
            LoanTransaction("t1", TransactionType.REPAYMENT, date(2024, 2, 1), usd('10'),
                            reverses_id="t0")

    def test_component_hint_on_waivers_only(self):
        """Test breakdown hints are refused on repayments"""
        with pytest.raises(ValueError, match="waivers only"):
            LoanTransaction("t1", TransactionType.REPAYMENT, date(2024, 2, 1), usd('10'),
                            component=AllocationComponent.FEE)

    def test_round_trip(self):
        """Test transaction dictionary conversion"""
        transaction = LoanTransaction(
            "w1", TransactionType.WAIVE_CHARGE, date(2024, 2, 1), usd('5.00'),
            sequence=3, component=AllocationComponent.PENALTY, installment_number=1
        )
        assert LoanTransaction.from_dict(transaction.to_dict()) == transaction


class TestTransactionReplay:
    """Test folding a transaction log over installments"""

    def setup_method(self):
        """Set up an interest-free 1200 loan with a fee and a penalty in installment 1"""
        self.product = LoanProductConfig(currency=Currency.USD)
        self.engine = LoanScheduleEngine(self.product)
        terms = LoanTerms(usd('1200.00'), Decimal('0'), date(2024, 1, 1))
        self.model = self.engine.generate(terms, charges=[
            LoanCharge(date(2024, 1, 15), usd('10.00')),
            LoanCharge(date(2024, 1, 20), usd('5.00'), penalty=True),
        ])
        self.processor = EnhancedTransactionProcessor(self.product)

    def test_allocation_order(self):
        """Test penalty, fee, interest then principal"""
        result = self.processor.replay(self.model, [repayment("r1", date(2024, 2, 1), '50.00')])
        allocations = [(a.installment_number, a.component, a.amount)
                       for a in result.allocations_for("r1")]
        assert allocations == [
            (1, AllocationComponent.PENALTY, usd('5.00')),
            (1, AllocationComponent.FEE, usd('10.00')),
            (1, AllocationComponent.PRINCIPAL, usd('35.00')),
        ]
        first = result.installments[0]
        assert first.principal_paid == usd('35.00')
        assert first.total_outstanding == usd('65.00')
        assert result.applied_transaction_ids == ["r1"]

    def test_overflow_carries_forward(self):
        """Test an overpayment is applied to the next installments"""
        result = self.processor.replay(self.model, [repayment("r1", date(2024, 2, 1), '230.00')])
        installments = result.installments
        assert installments[0].is_fully_paid
        assert installments[1].is_fully_paid
        assert installments[2].principal_paid == usd('15.00')
        assert result.total_outstanding == usd('985.00')

    def test_log_order_is_date_then_sequence(self):
        """Test the log is replayed by date and submission sequence"""
        transactions = [
            repayment("late", date(2024, 3, 1), '100.00'),
            repayment("second", date(2024, 2, 1), '15.00', sequence=2),
            repayment("first", date(2024, 2, 1), '100.00', sequence=1),
        ]
        result = self.processor.replay(self.model, transactions)
        assert result.applied_transaction_ids == ["first", "second", "late"]
        assert [a.component for a in result.allocations_for("first")] == [
            AllocationComponent.PENALTY, AllocationComponent.FEE, AllocationComponent.PRINCIPAL
        ]

    def test_repayment_exceeding_outstanding(self):
        """Test an excess repayment fails the replay"""
        with pytest.raises(AllocationError, match="exceeds the total outstanding") as error:
            self.processor.replay(self.model, [repayment("r1", date(2024, 2, 1), '1300.00')])
        assert error.value.transaction_id == "r1"

    def test_invalid_logs(self):
        """Test transactions that cannot be applied"""
        with pytest.raises(AllocationError, match="before the first disbursement"):
            self.processor.replay(self.model, [repayment("r1", date(2023, 12, 31), '10.00')])
        with pytest.raises(AllocationError, match="Duplicate transaction id"):
            self.processor.replay(self.model, [
                repayment("r1", date(2024, 2, 1), '10.00'),
                repayment("r1", date(2024, 2, 2), '10.00'),
            ])
        with pytest.raises(AllocationError, match="Amount is required"):
            self.processor.replay(self.model, [
                LoanTransaction("r1", TransactionType.REPAYMENT, date(2024, 2, 1))
            ])
        with pytest.raises(AllocationError, match="Currency"):
            self.processor.replay(self.model, [
                LoanTransaction("r1", TransactionType.REPAYMENT, date(2024, 2, 1),
                                Money(Decimal('10'), Currency.EUR))
            ])
        with pytest.raises(AllocationError, match="must be positive"):
            self.processor.replay(self.model, [repayment("r1", date(2024, 2, 1), '0')])

    def test_reversal_equals_omission(self):
        """Test a reversed repayment leaves the same state as never recording it"""
        base = [repayment("r1", date(2024, 2, 1), '50.00')]
        with_reversal = base + [
            repayment("r2", date(2024, 2, 5), '30.00'),
            reversal("x1", date(2024, 2, 10), "r2"),
        ]
        expected = self.processor.replay(self.model, base)
        actual = self.processor.replay(self.model, with_reversal)
        assert actual.installments == expected.installments
        assert actual.allocations == expected.allocations

    def test_reversal_of_earlier_repayment_reallocates_later_ones(self):
        """Test later repayments move up when an earlier one is reversed"""
        result = self.processor.replay(self.model, [
            repayment("r1", date(2024, 2, 1), '115.00'),
            repayment("r2", date(2024, 3, 1), '100.00'),
            reversal("x1", date(2024, 3, 5), "r1"),
        ])
        assert [a.installment_number for a in result.allocations_for("r2")] == [1, 1, 1]
        assert result.installments[0].total_outstanding == usd('15.00')

    def test_invalid_reversals(self):
        """Test reversals of unknown, reversed or later transactions"""
        r1 = repayment("r1", date(2024, 2, 1), '50.00')
        with pytest.raises(AllocationError, match="unknown transaction"):
            self.processor.replay(self.model, [r1, reversal("x1", date(2024, 2, 2), "nope")])
        with pytest.raises(AllocationError, match="already reversed"):
            self.processor.replay(self.model, [
                r1, reversal("x1", date(2024, 2, 2), "r1"), reversal("x2", date(2024, 2, 3), "r1")
            ])
        with pytest.raises(AllocationError, match="cannot be reversed"):
            self.processor.replay(self.model, [
                r1, reversal("x1", date(2024, 2, 2), "r1"), reversal("x2", date(2024, 2, 3), "x1")
            ])
        with pytest.raises(AllocationError, match="precedes"):
            self.processor.replay(self.model, [r1, reversal("x1", date(2024, 1, 20), "r1")])

    def test_waive_charges(self):
        """Test charge waivers default to penalty then fee"""
        result = self.processor.replay(self.model, [
            LoanTransaction("w1", TransactionType.WAIVE_CHARGE, date(2024, 1, 25), usd('12.00')),
            repayment("r1", date(2024, 2, 1), '103.00'),
        ])
        first = result.installments[0]
        assert first.penalty_waived == usd('5.00')
        assert first.fee_waived == usd('7.00')
        assert first.fee_paid == usd('3.00')
        assert first.is_fully_paid

    def test_waiver_with_component_and_installment(self):
        """Test a waiver restricted to one component of one installment"""
        result = self.processor.replay(self.model, [
            LoanTransaction("w1", TransactionType.WAIVE_CHARGE, date(2024, 1, 25), usd('10.00'),
                            component=AllocationComponent.FEE, installment_number=1),
        ])
        assert result.installments[0].fee_waived == usd('10.00')
        assert result.installments[0].penalty_waived.is_zero()

    def test_invalid_waivers(self):
        """Test waivers beyond what is outstanding"""
        with pytest.raises(AllocationError, match="Waiver exceeds"):
            self.processor.replay(self.model, [
                LoanTransaction("w1", TransactionType.WAIVE_INTEREST, date(2024, 1, 25), usd('1.00'))
            ])
        with pytest.raises(AllocationError, match="Unknown installment"):
            self.processor.replay(self.model, [
                LoanTransaction("w1", TransactionType.WAIVE_CHARGE, date(2024, 1, 25), usd('1.00'),
                                installment_number=13)
            ])
        with pytest.raises(AllocationError, match="fees and penalties only"):
            self.processor.replay(self.model, [
                LoanTransaction("w1", TransactionType.WAIVE_CHARGE, date(2024, 1, 25), usd('1.00'),
                                component=AllocationComponent.INTEREST)
            ])

    def test_chargeback_reopens_repayment(self):
        """Test chargebacks reopen the repayment's components, last allocated first"""
        log = [
            repayment("r1", date(2024, 2, 1), '50.00'),
            chargeback("c1", date(2024, 2, 10), "r1", '20.00'),
        ]
        result = self.processor.replay(self.model, log)
        assert [(a.installment_number, a.component, a.amount)
                for a in result.allocations_for("c1")] == [
            (1, AllocationComponent.PRINCIPAL, usd('20.00')),
        ]
        assert result.installments[0].principal_paid == usd('15.00')
        assert result.installments[0].total_outstanding == usd('85.00')
        assert result.total_outstanding == usd('1185.00')

        # Without an amount the rest of the repayment is reopened
        log.append(chargeback("c2", date(2024, 2, 12), "r1"))
        result = self.processor.replay(self.model, log)
        assert [(a.component, a.amount) for a in result.allocations_for("c2")] == [
            (AllocationComponent.PRINCIPAL, usd('15.00')),
            (AllocationComponent.FEE, usd('10.00')),
            (AllocationComponent.PENALTY, usd('5.00')),
        ]
        assert result.installments[0].total_outstanding == usd('115.00')
        assert result.total_outstanding == usd('1215.00')

        with pytest.raises(AllocationError, match="Chargeback exceeds") as error:
            self.processor.replay(self.model, log + [chargeback("c3", date(2024, 2, 13), "r1", '1.00')])
        assert error.value.transaction_id == "c3"
        with pytest.raises(AllocationError, match="fully charged back"):
            self.processor.replay(self.model, log + [chargeback("c3", date(2024, 2, 13), "r1")])

    def test_repayment_after_chargeback(self):
        """Test a later repayment settles the reopened amount"""
        result = self.processor.replay(self.model, [
            repayment("r1", date(2024, 2, 1), '50.00'),
            chargeback("c1", date(2024, 2, 10), "r1", '20.00'),
            repayment("r2", date(2024, 2, 15), '20.00'),
        ])
        assert [(a.installment_number, a.component, a.amount)
                for a in result.allocations_for("r2")] == [
            (1, AllocationComponent.PRINCIPAL, usd('20.00')),
        ]
        assert result.installments[0].principal_paid == usd('35.00')

    def test_reversed_chargeback_equals_omission(self):
        """Test reversing a chargeback restores the repayment"""
        base = [repayment("r1", date(2024, 2, 1), '50.00')]
        with_reversal = base + [
            chargeback("c1", date(2024, 2, 10), "r1", '20.00'),
            reversal("x1", date(2024, 2, 11), "c1"),
        ]
        assert (self.processor.replay(self.model, with_reversal).installments
                == self.processor.replay(self.model, base).installments)

    def test_invalid_chargebacks(self):
        """Test chargebacks that cannot be applied"""
        with pytest.raises(ValueError, match="must reference"):
            LoanTransaction("c1", TransactionType.CHARGEBACK, date(2024, 2, 10))
        waiver = LoanTransaction("w1", TransactionType.WAIVE_CHARGE, date(2024, 2, 1), usd('5.00'))
        with pytest.raises(AllocationError, match="Only repayments"):
            self.processor.replay(self.model, [waiver, chargeback("c1", date(2024, 2, 10), "w1")])
        with pytest.raises(AllocationError, match="is reversed"):
            self.processor.replay(self.model, [
                repayment("r1", date(2024, 2, 1), '50.00'),
                chargeback("c1", date(2024, 2, 10), "r1"),
                reversal("x1", date(2024, 2, 11), "r1"),
            ])
        with pytest.raises(AllocationError, match="not applied yet"):
            self.processor.replay(self.model, [
                repayment("r1", date(2024, 2, 1), '50.00', sequence=2),
                LoanTransaction("c1", TransactionType.CHARGEBACK, date(2024, 2, 1),
                                sequence=1, reverses_id="r1"),
            ])
        with pytest.raises(AllocationError, match="after charge-off"):
            self.processor.replay(self.model, [
                repayment("r1", date(2024, 2, 1), '50.00'),
                LoanTransaction("co", TransactionType.CHARGE_OFF, date(2024, 2, 5)),
                chargeback("c1", date(2024, 2, 10), "r1"),
            ])

    def test_charge_off_and_recovery(self):
        """Test charge-off writes off everything and later repayments are recoveries"""
        result = self.processor.replay(self.model, [
            repayment("r1", date(2024, 2, 1), '50.00'),
            LoanTransaction("c1", TransactionType.CHARGE_OFF, date(2024, 3, 1), usd('1165.00')),
            repayment("r2", date(2024, 4, 1), '40.00'),
        ])
        assert result.charged_off_on == date(2024, 3, 1)
        assert result.total_outstanding.is_zero()
        assert result.installments[0].principal_written_off == usd('65.00')
        assert result.recovered == usd('40.00')
        recovery = result.allocations_for("r2")
        assert len(recovery) == 1
        assert recovery[0].installment_number is None

    def test_invalid_charge_offs(self):
        """Test a second charge-off, a wrong amount and waivers after charge-off"""
        charge_off = LoanTransaction("c1", TransactionType.CHARGE_OFF, date(2024, 3, 1))
        with pytest.raises(AllocationError, match="already charged off"):
            self.processor.replay(self.model, [
                charge_off, LoanTransaction("c2", TransactionType.CHARGE_OFF, date(2024, 3, 2))
            ])
        with pytest.raises(AllocationError, match="does not match outstanding"):
            self.processor.replay(self.model, [
                LoanTransaction("c1", TransactionType.CHARGE_OFF, date(2024, 3, 1), usd('10.00'))
            ])
        with pytest.raises(AllocationError, match="not allowed after charge-off"):
            self.processor.replay(self.model, [
                charge_off,
                LoanTransaction("w1", TransactionType.WAIVE_CHARGE, date(2024, 3, 2), usd('1.00')),
            ])

    def test_reversed_charge_off(self):
        """Test reversing a charge-off restores the installments"""
        result = self.processor.replay(self.model, [
            LoanTransaction("c1", TransactionType.CHARGE_OFF, date(2024, 3, 1)),
            reversal("x1", date(2024, 3, 2), "c1"),
            repayment("r1", date(2024, 3, 3), '115.00'),
        ])
        assert result.charged_off_on is None
        assert result.installments[0].is_fully_paid
        assert result.recovered.is_zero()
