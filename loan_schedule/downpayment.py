"""
Down Payment Module

Down payments are taken when a tranche is disbursed and reduce the
principal before the first interest-bearing period is computed. They are
recorded on the DisbursementPeriod, never allocated as a later payment.
"""

from decimal import Decimal
from datetime import date
from dataclasses import replace
from typing import Optional
import logging

from .currency import Money, round_to_multiple
from .errors import ScheduleValidationError
from .logging_config import log_action
from .model import DisbursementPeriod, InterestScheduleModel
from .product import LoanProductConfig
from .schedule import ProgressiveLoanScheduleGenerator
from .transactions import LoanTransaction, TransactionType

logger = logging.getLogger(__name__)


class DownPaymentHandler:
    """Down payment calculation and application for one product"""

    def __init__(self, product: LoanProductConfig, generator: ProgressiveLoanScheduleGenerator):
        self.product = product
        self.generator = generator

    @property
    def enabled(self) -> bool:
        return self.product.enable_down_payment and (
            self.product.down_payment_amount is not None
            or self.product.down_payment_percentage > Decimal('0')
        )

    def calculate(self, disbursement_amount: Money) -> Money:
        """
        Down payment due on a disbursed amount

        Args:
            disbursement_amount: Gross disbursed amount

        Returns:
            The fixed amount when one is configured, else the percentage of
            the amount rounded to currency and to the installment multiple
            when one is configured; never more than the disbursed amount and
            zero when disabled
        """
        if not self.enabled:
            return Money.zero(disbursement_amount.currency)
        if self.product.down_payment_amount is not None:
            fixed = Money(self.product.down_payment_amount, disbursement_amount.currency)
            return fixed.min(disbursement_amount)
        down_payment = disbursement_amount * (self.product.down_payment_percentage / Decimal('100'))
        if self.product.installment_amount_in_multiples_of:
            down_payment = round_to_multiple(down_payment, self.product.installment_amount_in_multiples_of)
        return down_payment.min(disbursement_amount)

    def apply(self, tranche: DisbursementPeriod) -> DisbursementPeriod:
        """Record the down payment on a tranche before it enters the schedule"""
        down_payment = self.calculate(tranche.amount)
        if down_payment == tranche.down_payment:
            return tranche
        return replace(tranche, down_payment=down_payment)

    def create_transaction(self, tranche: DisbursementPeriod, transaction_id: str,
                           sequence: int = 0) -> Optional[LoanTransaction]:
        """DOWN_PAYMENT transaction dated on the disbursement date, if any is due"""
        if tranche.down_payment.is_zero():
            return None
        return LoanTransaction(
            id=transaction_id,
            transaction_type=TransactionType.DOWN_PAYMENT,
            transaction_date=tranche.disbursement_date,
            amount=tranche.down_payment,
            sequence=sequence,
        )

    def reverse(self, model: InterestScheduleModel, disbursement_date: date) -> InterestScheduleModel:
        """
        Undo the down payment of the tranche disbursed on a date

        The principal is restored and the schedule rebuilt from the period
        the tranche falls in.

        Raises:
            ScheduleValidationError: If no active tranche on that date carries a down payment
            RetroactiveMutationError: If the tranche lies inside a settled period
        """
        for position, tranche in enumerate(model.disbursement_periods):
            if tranche.reversed or tranche.disbursement_date != disbursement_date:
                continue
            if tranche.down_payment.is_zero():
                continue
            restored = replace(tranche, down_payment=Money.zero(tranche.amount.currency))
            log_action(logger, "info", "Down payment reversed", action="reverse_down_payment",
                       resource="disbursement",
                       extra={"disbursement_date": disbursement_date.isoformat(),
                              "amount": str(tranche.down_payment.amount)})
            return self.generator.replace_disbursement(model, position, restored)

        raise ScheduleValidationError(
            f"No down payment recorded for a disbursement on {disbursement_date.isoformat()}"
        )
