"""
Multi-Disbursement Module

Adds tranches to, and reverses tranches of, an already generated schedule.
A new tranche is capped at the approved principal still undisbursed, takes
its down payment, and triggers a rebuild from the period it falls in.
"""

from datetime import date
from dataclasses import replace
import logging

from .currency import Money
from .downpayment import DownPaymentHandler
from .errors import ConfigurationError, ScheduleValidationError
from .logging_config import log_action
from .model import DisbursementPeriod, InterestScheduleModel
from .product import LoanProductConfig
from .schedule import ProgressiveLoanScheduleGenerator

logger = logging.getLogger(__name__)


class MultiDisbursementHandler:
    """Tranche handling for one product"""

    def __init__(
        self,
        product: LoanProductConfig,
        generator: ProgressiveLoanScheduleGenerator,
        down_payments: DownPaymentHandler
    ):
        self.product = product
        self.generator = generator
        self.down_payments = down_payments

    def remaining_principal(self, model: InterestScheduleModel) -> Money:
        """Approved principal not yet disbursed"""
        return (model.terms.principal - model.total_disbursed).max(model.zero())

    def add_disbursement(self, model: InterestScheduleModel, disbursement_date: date,
                         amount: Money) -> InterestScheduleModel:
        """
        Disburse a further tranche

        Args:
            model: Current schedule model
            disbursement_date: Date the tranche is paid out
            amount: Requested gross amount

        Returns:
            Rebuilt schedule model

        Raises:
            ConfigurationError: If the product allows a single disbursement only
            ScheduleValidationError: If the amount is not positive, the approved
                principal is exhausted, or the date is on or after maturity
            RetroactiveMutationError: If the date falls inside a settled period
        """
        if model.active_disbursements and not self.product.allow_multiple_disbursements:
            raise ConfigurationError("Product does not allow multiple disbursements")
        if amount.currency != model.currency:
            raise ScheduleValidationError("Disbursement currency does not match loan currency")
        if not amount.is_positive():
            raise ScheduleValidationError("Disbursement amount must be positive")

        remaining = self.remaining_principal(model)
        if remaining.is_zero():
            raise ScheduleValidationError("Approved principal is fully disbursed")
        if amount > remaining:
            log_action(logger, "warning",
                       f"Disbursement of {amount.to_string()} capped at remaining approved "
                       f"principal {remaining.to_string()}",
                       action="add_disbursement", resource="disbursement",
                       extra={"requested": str(amount.amount), "capped": str(remaining.amount)})
            amount = remaining

        tranche = self.down_payments.apply(DisbursementPeriod(disbursement_date, amount))
        rebuilt = self.generator.insert_disbursement(model, tranche)
        log_action(logger, "info", "Disbursement added", action="add_disbursement",
                   resource="disbursement",
                   extra={"disbursement_date": disbursement_date.isoformat(),
                          "amount": str(tranche.amount.amount),
                          "down_payment": str(tranche.down_payment.amount)})
        return rebuilt

    def reverse_disbursement(self, model: InterestScheduleModel,
                             disbursement_date: date) -> InterestScheduleModel:
        """
        Mark the tranche disbursed on a date as reversed and rebuild

        Raises:
            ScheduleValidationError: If no active tranche exists on that date,
                or it is the only active tranche
            RetroactiveMutationError: If the tranche lies inside a settled period
        """
        for position, tranche in enumerate(model.disbursement_periods):
            if tranche.reversed or tranche.disbursement_date != disbursement_date:
                continue
            rebuilt = self.generator.replace_disbursement(model, position, replace(tranche, reversed=True))
            log_action(logger, "info", "Disbursement reversed", action="reverse_disbursement",
                       resource="disbursement",
                       extra={"disbursement_date": disbursement_date.isoformat(),
                              "amount": str(tranche.amount.amount)})
            return rebuilt

        raise ScheduleValidationError(
            f"No active disbursement on {disbursement_date.isoformat()}"
        )
