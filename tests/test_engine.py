"""
Test suite for the schedule engine

Tests product validation at construction, settlement after replay,
refusal of retroactive mutations, snapshot round trips and structured
logging of engine actions.
"""

import json
import logging
import pytest
from decimal import Decimal
from datetime import date

from loan_schedule.business_calendar import BusinessCalendar, Holiday, WorkingDays, WEEKENDS
from loan_schedule.currency import Money, Currency
from loan_schedule.engine import LoanScheduleEngine
from loan_schedule.errors import (
    AllocationError, ConfigurationError, RetroactiveMutationError, ScheduleValidationError
)
from loan_schedule.logging_config import JSONFormatter, log_action
from loan_schedule.model import DisbursementPeriod, InterestPausePeriod, LoanCharge
from loan_schedule.product import (
    DaysInYearType, LeapYearStrategy, LoanProductConfig, LoanTerms
)
from loan_schedule.transactions import LoanTransaction, TransactionType


def usd(amount: str) -> Money:
    return Money(Decimal(amount), Currency.USD)


def repayment(transaction_id: str, day: date, amount: str) -> LoanTransaction:
    return LoanTransaction(transaction_id, TransactionType.REPAYMENT, day, usd(amount))


class TestEngineConstruction:
    """Test configuration checks before any computation"""

    def test_invalid_leap_year_combination(self):
        """Test DAYS_360 with FEB_29_PERIOD_ONLY is refused at construction"""
        product = LoanProductConfig(
            currency=Currency.USD,
            days_in_year_type=DaysInYearType.DAYS_360,
            leap_year_strategy=LeapYearStrategy.FEB_29_PERIOD_ONLY,
        )
        with pytest.raises(ConfigurationError):
            LoanScheduleEngine(product)

    def test_generate_input_checks(self):
        """Test tranche and currency checks on generation"""
        engine = LoanScheduleEngine(LoanProductConfig(currency=Currency.USD))
        terms = LoanTerms(usd('1000.00'), Decimal('0.1'), date(2024, 1, 1))
        with pytest.raises(ConfigurationError, match="multiple disbursements"):
            engine.generate(terms, [
                DisbursementPeriod(date(2024, 1, 1), usd('500.00')),
                DisbursementPeriod(date(2024, 2, 10), usd('500.00')),
            ])
        with pytest.raises(ScheduleValidationError, match="exceed the approved principal"):
            engine.generate(terms, [DisbursementPeriod(date(2024, 1, 1), usd('1500.00'))])
        with pytest.raises(ConfigurationError, match="does not match product currency"):
            engine.generate(LoanTerms(Money(Decimal('1000'), Currency.EUR), Decimal('0.1'),
                                      date(2024, 1, 1)))


class TestSettlement:
    """Test settled installments and retroactive mutations"""

    def setup_method(self):
        """Set up an interest-free 1200 loan with two installments paid"""
        self.engine = LoanScheduleEngine(LoanProductConfig(currency=Currency.USD))
        terms = LoanTerms(usd('1200.00'), Decimal('0'), date(2024, 1, 1))
        self.model = self.engine.generate(terms)
        self.transactions = [
            repayment("r1", date(2024, 2, 1), '100.00'),
            repayment("r2", date(2024, 3, 1), '100.00'),
        ]
        self.result = self.engine.replay(self.model, self.transactions, business_date=date(2024, 3, 15))

    def test_leading_paid_installments_settled(self):
        """Test fully paid installments due before the business date are settled"""
        settled = self.result.model
        assert [p.settled for p in settled.repayment_periods[:3]] == [True, True, False]
        assert settled.settled_count == 2
        assert settled.settled_through == date(2024, 3, 1)
        assert self.result.total_outstanding == usd('1000.00')

    def test_paid_but_not_yet_due_is_open(self):
        """Test an installment paid early stays open until its due date passes"""
        result = self.engine.replay(self.model, self.transactions, business_date=date(2024, 3, 1))
        assert result.model.settled_count == 1

    def test_retroactive_rate_change_refused(self):
        """Test mutations dated inside a settled installment"""
        with pytest.raises(RetroactiveMutationError) as error:
            self.engine.change_interest_rate(self.result.model, date(2024, 2, 15), Decimal('0.10'))
        assert error.value.mutation_date == date(2024, 2, 15)
        with pytest.raises(RetroactiveMutationError):
            self.engine.add_charge(self.result.model, date(2024, 3, 1), usd('5.00'))
        with pytest.raises(RetroactiveMutationError):
            self.engine.generator.rebuild(self.result.model, 1)

    def test_mutation_on_settled_due_date_allowed(self):
        """Test a rate change on the last settled due date rebuilds the open suffix"""
        settled = self.result.model
        changed = self.engine.change_interest_rate(settled, date(2024, 3, 1), Decimal('0.10'))
        assert changed.repayment_periods[0] is settled.repayment_periods[0]
        assert changed.repayment_periods[1] is settled.repayment_periods[1]
        assert changed.settled_count == 2
        assert changed.repayment_periods[2].interest_due.is_positive()

    def test_schedule_view(self):
        """Test the display view of installments"""
        view = self.result.schedule_view()
        assert len(view) == 12
        assert view[0]['principal_due'] == '100.00'
        assert view[0]['total_outstanding'] == '0.00'
        assert view[0]['settled'] is True
        assert view[2]['fully_paid'] is False

    def test_replay_errors_propagate(self):
        """Test no partial result is returned for an invalid log"""
        with pytest.raises(AllocationError):
            self.engine.replay(self.model, self.transactions + [
                repayment("r3", date(2024, 4, 1), '5000.00')
            ], business_date=date(2024, 4, 15))


class TestSnapshots:
    """Test snapshot round trips"""

    def setup_method(self):
        """Set up a schedule touched by every kind of mutation"""
        self.product = LoanProductConfig(currency=Currency.USD, allow_multiple_disbursements=True)
        self.engine = LoanScheduleEngine(self.product)
        terms = LoanTerms(usd('15000.00'), Decimal('0.12'), date(2024, 1, 1))
        model = self.engine.generate(
            terms,
            [DisbursementPeriod(date(2024, 1, 1), usd('10000.00'))],
            pauses=[InterestPausePeriod(date(2024, 8, 1), date(2024, 8, 15))],
            charges=[LoanCharge(date(2024, 2, 10), usd('25.00'), name="Processing fee")],
        )
        model = self.engine.add_disbursement(model, date(2024, 4, 10), usd('5000.00'))
        model = self.engine.change_interest_rate(model, date(2024, 6, 1), Decimal('0.15'))
        model = self.engine.adjust_principal(model, date(2024, 9, 20), usd('500.00'))
        self.model = self.engine.replay(model, [repayment("r1", date(2024, 2, 1), '900.00')],
                                        business_date=date(2024, 2, 15)).model

    def test_round_trip_is_lossless(self):
        """Test load(snapshot) restores an equal model"""
        loaded = self.engine.load(json.loads(json.dumps(self.engine.snapshot(self.model))))
        assert loaded == self.model

    def test_snapshot_is_byte_identical(self):
        """Test snapshot, load, snapshot gives the same document"""
        text = json.dumps(self.engine.snapshot(self.model), sort_keys=True)
        reloaded = self.engine.load(json.loads(text))
        assert json.dumps(self.engine.snapshot(reloaded), sort_keys=True) == text

    def test_generate_is_deterministic(self):
        """Test two fresh engines build byte-identical schedules from the same inputs"""
        def build():
            calendar = BusinessCalendar(
                holidays=[Holiday("Spring holiday", date(2024, 4, 1), date(2024, 4, 1))],
                working_days=WorkingDays(non_working_weekdays=WEEKENDS),
            )
            engine = LoanScheduleEngine(
                LoanProductConfig(currency=Currency.USD, allow_multiple_disbursements=True,
                                  enable_down_payment=True, down_payment_percentage=Decimal('10')),
                calendar,
            )
            model = engine.generate(
                LoanTerms(usd('15000.00'), Decimal('0.12'), date(2024, 1, 1)),
                [DisbursementPeriod(date(2024, 1, 1), usd('10000.00')),
                 DisbursementPeriod(date(2024, 3, 12), usd('5000.00'))],
                pauses=[InterestPausePeriod(date(2024, 8, 1), date(2024, 8, 15))],
                charges=[LoanCharge(date(2024, 2, 10), usd('25.00'), name="Processing fee"),
                         LoanCharge(date(2024, 5, 3), usd('10.00'), penalty=True)],
            )
            return json.dumps(engine.snapshot(model), sort_keys=True)

        first = build()
        assert build() == first
        assert '"2024-04-02"' in first    # Holiday-shifted effective due date

    def test_snapshot_currency_mismatch(self):
        """Test a snapshot cannot be loaded under a product in another currency"""
        engine = LoanScheduleEngine(LoanProductConfig(currency=Currency.EUR))
        with pytest.raises(ConfigurationError, match="does not match product currency"):
            engine.load(self.engine.snapshot(self.model))

    def test_unsupported_snapshot_version(self):
        """Test unknown snapshot versions are refused"""
        snapshot = self.engine.snapshot(self.model)
        snapshot['version'] = 99
        with pytest.raises(ValueError, match="Unsupported snapshot version"):
            self.engine.load(snapshot)


class TestStructuredLogging:
    """Test JSON log records of engine actions"""

    def test_json_formatter(self):
        """Test action, resource and extra fields are emitted"""
        records = []

        class Capture(logging.Handler):
            def emit(self, record):
                records.append(record)

        logger = logging.getLogger("loan_schedule.tests.capture")
        logger.setLevel(logging.INFO)
        logger.addHandler(Capture())
        log_action(logger, "info", "Repayment schedule rebuilt", action="rebuild",
                   resource="schedule", extra={"start_index": 3})

        assert len(records) == 1
        entry = json.loads(JSONFormatter().format(records[0]))
        assert entry["message"] == "Repayment schedule rebuilt"
        assert entry["action"] == "rebuild"
        assert entry["resource"] == "schedule"
        assert entry["extra"] == {"start_index": 3}
        assert entry["level"] == "INFO"
