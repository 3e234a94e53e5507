"""
Loan Schedule Engine Module

Entry point for callers: validates the product configuration once, builds
and mutates schedule models, replays transaction logs and converts models
to and from snapshots.

Every operation takes its inputs explicitly (model, business date,
calendar) and returns new objects; the engine holds no per-loan state.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
import logging

from .business_calendar import BusinessCalendar
from .config import EngineSettings, get_settings
from .currency import Money, sum_money
from .disbursement import MultiDisbursementHandler
from .downpayment import DownPaymentHandler
from .errors import ConfigurationError, ScheduleValidationError
from .logging_config import log_action
from .model import (
    DisbursementPeriod, InterestPausePeriod, InterestScheduleModel, LoanCharge, RatePeriod
)
from .product import LoanProductConfig, LoanTerms
from .schedule import ProgressiveLoanScheduleGenerator
from .transactions import (
    Allocation, EnhancedTransactionProcessor, LoanTransaction, RepaymentInstallment
)

logger = logging.getLogger(__name__)


@dataclass
class ScheduleResult:
    """Schedule model and installment states after a replay"""
    model: InterestScheduleModel
    business_date: date
    installments: List[RepaymentInstallment]
    allocations: List[Allocation] = field(default_factory=list)
    charged_off_on: Optional[date] = None
    recovered: Optional[Money] = None

    @property
    def total_outstanding(self) -> Money:
        return sum_money((i.total_outstanding for i in self.installments), self.model.currency)

    @property
    def is_charged_off(self) -> bool:
        return self.charged_off_on is not None

    def schedule_view(self) -> List[Dict[str, Any]]:
        """Installments for display: dates, component amounts and running balances"""
        view = []
        for installment, period in zip(self.installments, self.model.repayment_periods):
            view.append({
                'number': installment.number,
                'due_date': installment.due_date.isoformat(),
                'effective_due_date': installment.effective_due_date.isoformat(),
                'opening_balance': str(installment.opening_balance.amount),
                'principal_due': str(installment.principal_due.amount),
                'interest_due': str(installment.interest_due.amount),
                'fee_due': str(installment.fee_due.amount),
                'penalty_due': str(installment.penalty_due.amount),
                'closing_balance': str(installment.closing_balance.amount),
                'total_outstanding': str(installment.total_outstanding.amount),
                'fully_paid': installment.is_fully_paid,
                'settled': period.settled,
            })
        return view


class LoanScheduleEngine:
    """
    Schedule engine for one loan product

    Usage:
        engine = LoanScheduleEngine(product, calendar)
        model = engine.generate(terms)
        model = engine.add_disbursement(model, date(2024, 4, 10), Money(Decimal('500'), Currency.USD))
        result = engine.replay(model, transactions, business_date=date(2024, 6, 1))
        snapshot = engine.snapshot(result.model)
    """

    def __init__(
        self,
        product: LoanProductConfig,
        calendar: Optional[BusinessCalendar] = None,
        settings: Optional[EngineSettings] = None
    ):
        product.validate()
        self.product = product
        self.settings = settings or get_settings()
        self.calendar = calendar or BusinessCalendar(max_iterations=self.settings.max_iterations)
        self.generator = ProgressiveLoanScheduleGenerator(product, self.calendar, self.settings)
        self.down_payments = DownPaymentHandler(product, self.generator)
        self.disbursements = MultiDisbursementHandler(product, self.generator, self.down_payments)
        self.processor = EnhancedTransactionProcessor(product)

    def generate(
        self,
        terms: LoanTerms,
        disbursements: Optional[Sequence[DisbursementPeriod]] = None,
        rate_periods: Optional[Sequence[RatePeriod]] = None,
        pauses: Optional[Sequence[InterestPausePeriod]] = None,
        charges: Optional[Sequence[LoanCharge]] = None
    ) -> InterestScheduleModel:
        """
        Build a schedule from scratch

        Args:
            terms: Loan terms
            disbursements: Tranches (defaults to the approved principal on the
                disbursement date); down payments are applied here
            rate_periods: Rate changes after the disbursement date
            pauses: Interest pauses
            charges: Fees and penalties

        Returns:
            Built schedule model
        """
        tranches = disbursements or [DisbursementPeriod(terms.disbursement_date, terms.principal)]
        tranches = [self.down_payments.apply(t) for t in tranches]
        active = [t for t in tranches if not t.reversed]
        if len(active) > 1 and not self.product.allow_multiple_disbursements:
            raise ConfigurationError("Product does not allow multiple disbursements")
        if active and sum_money((t.amount for t in active), terms.currency) > terms.principal:
            raise ScheduleValidationError("Disbursements exceed the approved principal")

        model = self.generator.generate(terms, tranches, rate_periods, pauses, charges)
        log_action(logger, "info", "Repayment schedule generated", action="generate",
                   resource="schedule",
                   extra={"principal": str(terms.principal.amount),
                          "installments": len(model.repayment_periods),
                          "maturity_date": model.maturity_date.isoformat()})
        return model

    def add_disbursement(self, model: InterestScheduleModel, disbursement_date: date,
                         amount: Money) -> InterestScheduleModel:
        return self.disbursements.add_disbursement(model, disbursement_date, amount)

    def reverse_disbursement(self, model: InterestScheduleModel,
                             disbursement_date: date) -> InterestScheduleModel:
        return self.disbursements.reverse_disbursement(model, disbursement_date)

    def reverse_down_payment(self, model: InterestScheduleModel,
                             disbursement_date: date) -> InterestScheduleModel:
        return self.down_payments.reverse(model, disbursement_date)

    def down_payment_transactions(self, model: InterestScheduleModel) -> List[LoanTransaction]:
        """DOWN_PAYMENT transactions for the active tranches that carry one"""
        transactions = []
        for position, tranche in enumerate(model.active_disbursements):
            transaction = self.down_payments.create_transaction(
                tranche, f"down-payment-{tranche.disbursement_date.isoformat()}-{position}",
                sequence=position
            )
            if transaction:
                transactions.append(transaction)
        return transactions

    def change_interest_rate(self, model: InterestScheduleModel, effective_from: date,
                             annual_rate: Decimal) -> InterestScheduleModel:
        return self.generator.change_interest_rate(model, effective_from, annual_rate)

    def apply_interest_pause(self, model: InterestScheduleModel, start_date: date,
                             end_date: date) -> InterestScheduleModel:
        return self.generator.apply_interest_pause(model, start_date, end_date)

    def terminate_interest_pause(self, model: InterestScheduleModel, start_date: date,
                                 termination_date: date) -> InterestScheduleModel:
        return self.generator.terminate_interest_pause(model, start_date, termination_date)

    def adjust_principal(self, model: InterestScheduleModel, adjustment_date: date,
                         amount: Money) -> InterestScheduleModel:
        return self.generator.adjust_principal(model, adjustment_date, amount)

    def add_charge(self, model: InterestScheduleModel, due_date: date, amount: Money,
                   penalty: bool = False, name: str = "") -> InterestScheduleModel:
        return self.generator.add_charge(model, LoanCharge(due_date, amount, penalty, name))

    def replay(self, model: InterestScheduleModel, transactions: Sequence[LoanTransaction],
               business_date: date) -> ScheduleResult:
        """
        Replay the full transaction log and mark settled installments

        Leading installments that are fully paid and whose effective due
        date is before ``business_date`` are settled; later mutations cannot
        reach into them.

        Raises:
            AllocationError: If any transaction cannot be applied
        """
        replayed = self.processor.replay(model, transactions)

        flags = []
        settling = True
        for installment in replayed.installments:
            settling = (settling and installment.is_fully_paid
                        and installment.effective_due_date < business_date)
            flags.append(settling)
        settled_model = model.with_settled(flags)

        log_action(logger, "info", "Schedule replayed", action="replay", resource="schedule",
                   extra={"business_date": business_date.isoformat(),
                          "settled": sum(flags),
                          "transactions": len(transactions)})
        return ScheduleResult(
            model=settled_model,
            business_date=business_date,
            installments=replayed.installments,
            allocations=replayed.allocations,
            charged_off_on=replayed.charged_off_on,
            recovered=replayed.recovered,
        )

    def snapshot(self, model: InterestScheduleModel) -> Dict[str, Any]:
        """JSON-compatible snapshot of a model"""
        return model.to_dict()

    def load(self, snapshot: Dict[str, Any]) -> InterestScheduleModel:
        """
        Restore a model from a snapshot

        Raises:
            ConfigurationError: If the snapshot currency differs from the product's
        """
        model = InterestScheduleModel.from_dict(snapshot)
        if model.currency != self.product.currency:
            raise ConfigurationError(
                f"Snapshot currency {model.currency.code} does not match product currency "
                f"{self.product.currency.code}"
            )
        return model
