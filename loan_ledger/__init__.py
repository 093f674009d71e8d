"""
Loan Ledger Engine

Amortization schedules, per-installment state and the payment, undo and
extra-payment transitions that keep the installment table, the ledger
entries and the loan counters consistent. All money math uses Decimal.
"""

__version__ = "1.0.0"
