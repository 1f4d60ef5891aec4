"""
EMI Engine

Loan amortization, installment scheduling, collections and risk scoring
with exact Decimal arithmetic and per-loan consistency guarantees.
"""

__version__ = "1.0.0"
