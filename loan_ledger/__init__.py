"""
Loan Ledger Core

Ledger core of a micro-lending tracker: simple-interest amortization,
payment reconciliation against a loan's running balance, and loan
lifecycle status, with optimistic concurrency and Decimal math throughout.
"""

__version__ = "1.0.0"
