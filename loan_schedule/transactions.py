"""
Transaction Processing Module

Replays a loan's transaction log against its repayment periods. Replay is a
pure fold over the full log ordered by date and submission sequence; a
reversal is a transaction of its own that removes its target from the fold,
so replaying a log with a reversal gives the same balances as replaying it
without the reversed transaction.

Repayments are allocated to the earliest installment with anything
outstanding, component by component in the product's allocation order,
with overflow carried to the next installment. A chargeback reopens part of
an earlier repayment on the installment components that repayment paid.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set
from enum import Enum
import logging

from .currency import Money, Currency, sum_money
from .errors import AllocationError
from .logging_config import log_action
from .model import InterestScheduleModel, RepaymentPeriod
from .product import AllocationComponent, LoanProductConfig

logger = logging.getLogger(__name__)


class TransactionType(Enum):
    """Types of loan transactions"""
    DISBURSEMENT = "disbursement"
    DOWN_PAYMENT = "down_payment"
    REPAYMENT = "repayment"
    WAIVE_INTEREST = "waive_interest"
    WAIVE_CHARGE = "waive_charge"
    CHARGE_OFF = "charge_off"
    CHARGEBACK = "chargeback"    # Reopens part of an earlier repayment
    REVERSAL = "reversal"    # Removes another transaction from the replay


# Transactions that reference another transaction through ``reverses_id``
REFERENCING = {TransactionType.REVERSAL, TransactionType.CHARGEBACK}

CHARGE_COMPONENTS = (AllocationComponent.PENALTY, AllocationComponent.FEE)

# Transactions that must carry a positive amount
AMOUNT_REQUIRED = {
    TransactionType.DISBURSEMENT,
    TransactionType.DOWN_PAYMENT,
    TransactionType.REPAYMENT,
    TransactionType.WAIVE_INTEREST,
    TransactionType.WAIVE_CHARGE,
}


@dataclass(frozen=True)
class LoanTransaction:
    """
    Immutable loan transaction

    ``component`` and ``installment_number`` are breakdown hints for
    waivers; ``reverses_id`` is set on reversals and chargebacks only. A
    chargeback without an amount reopens everything left of its repayment.
    """
    id: str
    transaction_type: TransactionType
    transaction_date: date
    amount: Optional[Money] = None
    sequence: int = 0                         # Stable submission order within a day
    reverses_id: Optional[str] = None
    component: Optional[AllocationComponent] = None
    installment_number: Optional[int] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("Transaction id is required")
        if self.transaction_type == TransactionType.REVERSAL:
            if not self.reverses_id:
                raise ValueError("Reversal must reference the reversed transaction")
        elif self.transaction_type == TransactionType.CHARGEBACK:
            if not self.reverses_id:
                raise ValueError("Chargeback must reference the charged back repayment")
        elif self.reverses_id:
            raise ValueError("Only reversals and chargebacks may reference another transaction")
        if self.component is not None and self.transaction_type not in (
                TransactionType.WAIVE_CHARGE, TransactionType.WAIVE_INTEREST):
            raise ValueError("Component hints apply to waivers only")
        if self.installment_number is not None and self.installment_number <= 0:
            raise ValueError("Installment number must be positive")

    @property
    def sort_key(self):
        return (self.transaction_date, self.sequence)

    def to_dict(self) -> Dict:
        """Convert to dictionary"""
        return {
            'id': self.id,
            'transaction_type': self.transaction_type.value,
            'transaction_date': self.transaction_date.isoformat(),
            'amount': str(self.amount.amount) if self.amount else None,
            'currency': self.amount.currency.code if self.amount else None,
            'sequence': self.sequence,
            'reverses_id': self.reverses_id,
            'component': self.component.value if self.component else None,
            'installment_number': self.installment_number,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'LoanTransaction':
        """Convert dictionary to transaction"""
        amount = None
        if data.get('amount') is not None:
            amount = Money(Decimal(data['amount']), Currency[data['currency']])
        component = data.get('component')
        return cls(
            id=data['id'],
            transaction_type=TransactionType(data['transaction_type']),
            transaction_date=date.fromisoformat(data['transaction_date']),
            amount=amount,
            sequence=data.get('sequence', 0),
            reverses_id=data.get('reverses_id'),
            component=AllocationComponent(component) if component else None,
            installment_number=data.get('installment_number'),
        )


@dataclass
class RepaymentInstallment:
    """
    Installment state during a replay

    Due amounts come from the repayment period; paid, waived and written-off
    amounts accumulate per component as the log is folded.
    """
    number: int
    due_date: date
    effective_due_date: date
    opening_balance: Money
    disbursed_amount: Money
    principal_due: Money
    interest_due: Money
    fee_due: Money
    penalty_due: Money
    principal_paid: Optional[Money] = None
    interest_paid: Optional[Money] = None
    fee_paid: Optional[Money] = None
    penalty_paid: Optional[Money] = None
    principal_waived: Optional[Money] = None
    interest_waived: Optional[Money] = None
    fee_waived: Optional[Money] = None
    penalty_waived: Optional[Money] = None
    principal_written_off: Optional[Money] = None
    interest_written_off: Optional[Money] = None
    fee_written_off: Optional[Money] = None
    penalty_written_off: Optional[Money] = None

    def __post_init__(self):
        zero = Money.zero(self.principal_due.currency)
        for component in AllocationComponent:
            for kind in ('paid', 'waived', 'written_off'):
                name = f"{component.value}_{kind}"
                if getattr(self, name) is None:
                    setattr(self, name, zero)

    @classmethod
    def from_period(cls, period: RepaymentPeriod) -> 'RepaymentInstallment':
        return cls(
            number=period.number,
            due_date=period.due_date,
            effective_due_date=period.effective_due_date,
            opening_balance=period.opening_balance,
            disbursed_amount=period.disbursed_amount,
            principal_due=period.principal_due,
            interest_due=period.interest_due,
            fee_due=period.fee_due,
            penalty_due=period.penalty_due,
        )

    @property
    def closing_balance(self) -> Money:
        return self.opening_balance + self.disbursed_amount - self.principal_due

    def due(self, component: AllocationComponent) -> Money:
        return getattr(self, f"{component.value}_due")

    def paid(self, component: AllocationComponent) -> Money:
        return getattr(self, f"{component.value}_paid")

    def waived(self, component: AllocationComponent) -> Money:
        return getattr(self, f"{component.value}_waived")

    def written_off(self, component: AllocationComponent) -> Money:
        return getattr(self, f"{component.value}_written_off")

    def outstanding(self, component: AllocationComponent) -> Money:
        """Amount still collectable for a component"""
        return (self.due(component) - self.paid(component)
                - self.waived(component) - self.written_off(component))

    def record(self, component: AllocationComponent, kind: str, amount: Money) -> None:
        name = f"{component.value}_{kind}"
        setattr(self, name, getattr(self, name) + amount)

    def release(self, component: AllocationComponent, kind: str, amount: Money) -> None:
        name = f"{component.value}_{kind}"
        setattr(self, name, getattr(self, name) - amount)

    @property
    def total_due(self) -> Money:
        return sum_money((self.due(c) for c in AllocationComponent), self.principal_due.currency)

    @property
    def total_outstanding(self) -> Money:
        return sum_money((self.outstanding(c) for c in AllocationComponent),
                         self.principal_due.currency)

    @property
    def is_fully_paid(self) -> bool:
        """Every component covered by payments or waivers"""
        return all(
            (self.paid(c) + self.waived(c)) >= self.due(c) for c in AllocationComponent
        )


@dataclass(frozen=True)
class Allocation:
    """Part of a transaction attributed to one installment component"""
    transaction_id: str
    transaction_type: TransactionType
    installment_number: Optional[int]       # None for post charge-off recoveries
    component: Optional[AllocationComponent]
    amount: Money


@dataclass
class ReplayResult:
    """Installment states after folding a transaction log"""
    installments: List[RepaymentInstallment]
    allocations: List[Allocation] = field(default_factory=list)
    charged_off_on: Optional[date] = None
    recovered: Optional[Money] = None
    applied_transaction_ids: List[str] = field(default_factory=list)
    charged_back: Dict[str, Money] = field(default_factory=dict)   # Repayment id -> reopened total

    def installment(self, number: int) -> RepaymentInstallment:
        return next(i for i in self.installments if i.number == number)

    @property
    def total_outstanding(self) -> Money:
        currency = self.installments[0].principal_due.currency
        return sum_money((i.total_outstanding for i in self.installments), currency)

    def allocations_for(self, transaction_id: str) -> List[Allocation]:
        return [a for a in self.allocations if a.transaction_id == transaction_id]


class EnhancedTransactionProcessor:
    """
    Replays a transaction log against the installments of a schedule
    """

    def __init__(self, product: LoanProductConfig):
        self.product = product
        self.allocation_order = product.allocation_order

    def replay(self, model: InterestScheduleModel,
               transactions: Sequence[LoanTransaction]) -> ReplayResult:
        """
        Fold the full transaction log over fresh installments

        Args:
            model: Built schedule model
            transactions: Complete transaction log in any order

        Returns:
            ReplayResult with per-installment paid, waived and written-off amounts

        Raises:
            AllocationError: On the first transaction that cannot be applied;
                no partial result is returned
        """
        reversed_ids = self._validate(model, transactions)
        ordered = sorted(transactions, key=lambda t: t.sort_key)

        result = ReplayResult(
            installments=[RepaymentInstallment.from_period(p) for p in model.repayment_periods],
            recovered=model.zero(),
        )
        for transaction in ordered:
            if transaction.transaction_type == TransactionType.REVERSAL:
                continue
            if transaction.id in reversed_ids:
                continue
            self._apply(result, transaction)
            result.applied_transaction_ids.append(transaction.id)

        log_action(logger, "info", "Transaction log replayed", action="replay",
                   resource="transactions",
                   extra={"transactions": len(ordered), "reversed": len(reversed_ids),
                          "charged_off": result.charged_off_on is not None})
        return result

    def _validate(self, model: InterestScheduleModel,
                  transactions: Sequence[LoanTransaction]) -> Set[str]:
        """Check the log as a whole; returns the ids removed by reversals"""
        first_disbursement = model.first_disbursement_date
        by_id: Dict[str, LoanTransaction] = {}
        for transaction in transactions:
            if transaction.id in by_id:
                raise AllocationError("Duplicate transaction id", transaction.id)
            by_id[transaction.id] = transaction

            if transaction.transaction_date < first_disbursement:
                raise AllocationError(
                    f"Dated {transaction.transaction_date.isoformat()}, before the first "
                    f"disbursement on {first_disbursement.isoformat()}",
                    transaction.id
                )
            if transaction.amount is not None:
                if transaction.amount.currency != model.currency:
                    raise AllocationError("Currency does not match loan currency", transaction.id)
                if not transaction.amount.is_positive():
                    raise AllocationError("Amount must be positive", transaction.id)
            elif transaction.transaction_type in AMOUNT_REQUIRED:
                raise AllocationError("Amount is required", transaction.id)

        reversed_ids: Set[str] = set()
        for transaction in transactions:
            if transaction.transaction_type not in REFERENCING:
                continue
            target = by_id.get(transaction.reverses_id)
            if target is None:
                raise AllocationError(
                    f"References unknown transaction {transaction.reverses_id}", transaction.id
                )
            if transaction.transaction_date < target.transaction_date:
                raise AllocationError(
                    f"{transaction.transaction_type.value.capitalize()} precedes transaction "
                    f"{target.id}",
                    transaction.id
                )
            if transaction.transaction_type == TransactionType.CHARGEBACK:
                if target.transaction_type != TransactionType.REPAYMENT:
                    raise AllocationError("Only repayments can be charged back", transaction.id)
                continue
            if target.transaction_type == TransactionType.REVERSAL:
                raise AllocationError("A reversal cannot be reversed", transaction.id)
            if target.id in reversed_ids:
                raise AllocationError(f"Transaction {target.id} is already reversed", transaction.id)
            reversed_ids.add(target.id)

        for transaction in transactions:
            if (transaction.transaction_type == TransactionType.CHARGEBACK
                    and transaction.id not in reversed_ids
                    and transaction.reverses_id in reversed_ids):
                raise AllocationError(
                    f"Charged back repayment {transaction.reverses_id} is reversed", transaction.id
                )
        return reversed_ids

    def _apply(self, result: ReplayResult, transaction: LoanTransaction) -> None:
        transaction_type = transaction.transaction_type
        if transaction_type == TransactionType.REPAYMENT:
            self._apply_repayment(result, transaction)
        elif transaction_type == TransactionType.WAIVE_INTEREST:
            self._apply_waiver(result, transaction, [AllocationComponent.INTEREST])
        elif transaction_type == TransactionType.WAIVE_CHARGE:
            if transaction.component is None:
                components = list(CHARGE_COMPONENTS)
            elif transaction.component in CHARGE_COMPONENTS:
                components = [transaction.component]
            else:
                raise AllocationError("Charge waivers apply to fees and penalties only", transaction.id)
            self._apply_waiver(result, transaction, components)
        elif transaction_type == TransactionType.CHARGE_OFF:
            self._apply_charge_off(result, transaction)
        elif transaction_type == TransactionType.CHARGEBACK:
            self._apply_chargeback(result, transaction)
        elif transaction_type in (TransactionType.DISBURSEMENT, TransactionType.DOWN_PAYMENT):
            # Principal movements live in the schedule model
            logger.debug(f"Transaction {transaction.id} ({transaction_type.value}) recorded")
        else:
            raise AllocationError(f"Unsupported transaction type {transaction_type.value}",
                                  transaction.id)

    def _open_installments(self, result: ReplayResult) -> List[RepaymentInstallment]:
        """Installments with something outstanding, earliest effective due date first"""
        return sorted(
            (i for i in result.installments if i.total_outstanding.is_positive()),
            key=lambda i: (i.effective_due_date, i.number)
        )

    def _apply_repayment(self, result: ReplayResult, transaction: LoanTransaction) -> None:
        if result.charged_off_on is not None:
            result.recovered = result.recovered + transaction.amount
            result.allocations.append(Allocation(
                transaction.id, transaction.transaction_type, None, None, transaction.amount
            ))
            return

        remaining = transaction.amount
        for installment in self._open_installments(result):
            for component in self.allocation_order:
                if remaining.is_zero():
                    break
                portion = remaining.min(installment.outstanding(component))
                if not portion.is_positive():
                    continue
                installment.record(component, 'paid', portion)
                result.allocations.append(Allocation(
                    transaction.id, transaction.transaction_type, installment.number,
                    component, portion
                ))
                remaining = remaining - portion
            if remaining.is_zero():
                break

        if remaining.is_positive():
            raise AllocationError(
                f"Repayment exceeds the total outstanding by {remaining.to_string()}",
                transaction.id
            )

    def _apply_waiver(self, result: ReplayResult, transaction: LoanTransaction,
                      components: List[AllocationComponent]) -> None:
        if result.charged_off_on is not None:
            raise AllocationError("Waivers are not allowed after charge-off", transaction.id)

        installments = self._open_installments(result)
        if transaction.installment_number is not None:
            installments = [i for i in result.installments
                            if i.number == transaction.installment_number]
            if not installments:
                raise AllocationError(
                    f"Unknown installment {transaction.installment_number}", transaction.id
                )

        remaining = transaction.amount
        for installment in installments:
            for component in components:
                if remaining.is_zero():
                    break
                portion = remaining.min(installment.outstanding(component))
                if not portion.is_positive():
                    continue
                installment.record(component, 'waived', portion)
                result.allocations.append(Allocation(
                    transaction.id, transaction.transaction_type, installment.number,
                    component, portion
                ))
                remaining = remaining - portion

        if remaining.is_positive():
            raise AllocationError(
                f"Waiver exceeds the outstanding {'/'.join(c.value for c in components)} "
                f"by {remaining.to_string()}",
                transaction.id
            )

    def _apply_chargeback(self, result: ReplayResult, transaction: LoanTransaction) -> None:
        """
        Reopen part of a repayment on the installments it paid

        The repayment's allocations are unwound last first, so successive
        chargebacks against one repayment never reopen the same portion twice.
        """
        if result.charged_off_on is not None:
            raise AllocationError("Chargebacks are not allowed after charge-off", transaction.id)
        repayment_id = transaction.reverses_id
        if repayment_id not in result.applied_transaction_ids:
            raise AllocationError(f"Repayment {repayment_id} is not applied yet", transaction.id)

        repayment_allocations = result.allocations_for(repayment_id)
        currency = repayment_allocations[0].amount.currency
        paid = sum_money((a.amount for a in repayment_allocations), currency)
        already = result.charged_back.get(repayment_id, Money.zero(currency))
        available = paid - already
        amount = transaction.amount if transaction.amount is not None else available
        if not amount.is_positive():
            raise AllocationError(f"Repayment {repayment_id} is fully charged back", transaction.id)
        if amount > available:
            raise AllocationError(
                f"Chargeback exceeds the {available.to_string()} left of repayment {repayment_id}",
                transaction.id
            )

        skip = already
        remaining = amount
        for allocation in reversed(repayment_allocations):
            if remaining.is_zero():
                break
            portion = allocation.amount
            if skip.is_positive():
                skipped = skip.min(portion)
                skip = skip - skipped
                portion = portion - skipped
            portion = portion.min(remaining)
            if not portion.is_positive():
                continue
            result.installment(allocation.installment_number).release(
                allocation.component, 'paid', portion
            )
            result.allocations.append(Allocation(
                transaction.id, transaction.transaction_type, allocation.installment_number,
                allocation.component, portion
            ))
            remaining = remaining - portion
        result.charged_back[repayment_id] = already + amount

    def _apply_charge_off(self, result: ReplayResult, transaction: LoanTransaction) -> None:
        if result.charged_off_on is not None:
            raise AllocationError(
                f"Loan already charged off on {result.charged_off_on.isoformat()}", transaction.id
            )

        outstanding = result.total_outstanding
        if transaction.amount is not None and transaction.amount != outstanding:
            raise AllocationError(
                f"Charge-off amount {transaction.amount.to_string()} does not match outstanding "
                f"{outstanding.to_string()}",
                transaction.id
            )

        for installment in result.installments:
            for component in self.allocation_order:
                portion = installment.outstanding(component)
                if not portion.is_positive():
                    continue
                installment.record(component, 'written_off', portion)
                result.allocations.append(Allocation(
                    transaction.id, transaction.transaction_type, installment.number,
                    component, portion
                ))
        result.charged_off_on = transaction.transaction_date
