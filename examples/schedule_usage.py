#!/usr/bin/env python3
"""
Example: Building and servicing a progressive loan schedule

This example generates an EMI schedule over a holiday calendar, adds a
second tranche, pauses interest, replays repayments and round-trips the
result through a JSON snapshot.
"""

import json
from decimal import Decimal
from datetime import date

from loan_schedule.business_calendar import BusinessCalendar, Holiday, WorkingDays, WEEKENDS
from loan_schedule.config import get_settings
from loan_schedule.currency import Money, Currency
from loan_schedule.engine import LoanScheduleEngine
from loan_schedule.errors import RetroactiveMutationError
from loan_schedule.logging_config import setup_logging
from loan_schedule.model import DisbursementPeriod
from loan_schedule.product import LoanProductConfig, LoanTerms
from loan_schedule.transactions import LoanTransaction, TransactionType


def print_schedule(model):
    for period in model.repayment_periods:
        shifted = " *" if period.effective_due_date != period.due_date else ""
        print(f"   {period.number:>2}  {period.effective_due_date.isoformat()}{shifted:2}"
              f"  principal {period.principal_due.to_string():>14}"
              f"  interest {period.interest_due.to_string():>12}"
              f"  balance {period.closing_balance.to_string():>14}")


def main():
    print("Loan Schedule Engine - Progressive Loan Example")
    print("=" * 60)

    # 1. Configuration
    print("\n1. Configuration Setup")
    settings = get_settings()
    setup_logging(settings)
    print(f"   Max iterations: {settings.max_iterations}")
    print(f"   Log Level: {settings.log_level}")

    product = LoanProductConfig(currency=Currency.USD, allow_multiple_disbursements=True)
    calendar = BusinessCalendar(
        holidays=[Holiday("Spring holiday", date(2024, 4, 1), date(2024, 4, 1))],
        working_days=WorkingDays(non_working_weekdays=WEEKENDS),
    )
    engine = LoanScheduleEngine(product, calendar)

    # 2. Schedule generation
    print("\n2. Schedule Generation")
    terms = LoanTerms(
        principal=Money(Decimal('15000.00'), Currency.USD),
        annual_interest_rate=Decimal('0.12'),
        disbursement_date=date(2024, 1, 1),
    )
    model = engine.generate(terms, [DisbursementPeriod(date(2024, 1, 1), Money(Decimal('10000.00'), Currency.USD))])
    print_schedule(model)

    # 3. Mutations
    print("\n3. Second Tranche and Interest Pause")
    model = engine.add_disbursement(model, date(2024, 4, 10), Money(Decimal('5000.00'), Currency.USD))
    model = engine.apply_interest_pause(model, date(2024, 7, 1), date(2024, 7, 31))
    print_schedule(model)

    # 4. Repayments
    print("\n4. Transaction Replay")
    transactions = [
        LoanTransaction(f"repayment-{period.number}", TransactionType.REPAYMENT,
                        period.effective_due_date, period.total_due)
        for period in model.repayment_periods[:3]
    ]
    result = engine.replay(model, transactions, business_date=date(2024, 4, 15))
    print(f"   Settled installments: {result.model.settled_count}")
    print(f"   Total outstanding: {result.total_outstanding.to_string()}")

    try:
        engine.change_interest_rate(result.model, date(2024, 2, 15), Decimal('0.10'))
    except RetroactiveMutationError as e:
        print(f"   Refused: {e}")

    # 5. Snapshot
    print("\n5. Snapshot Round Trip")
    text = json.dumps(engine.snapshot(result.model), sort_keys=True)
    restored = engine.load(json.loads(text))
    print(f"   Snapshot size: {len(text)} bytes")
    print(f"   Restored model equal: {restored == result.model}")


if __name__ == "__main__":
    main()
