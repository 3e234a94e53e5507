"""
Loan Repayment Schedule Engine

Deterministic repayment schedule generation for cumulative and progressive
(EMI) loans, with holiday-aware due dates, multi-disbursement, down-payments,
interest pauses and an event-sourced transaction processor. All financial
math uses Decimal.
"""

__version__ = "1.0.0"
