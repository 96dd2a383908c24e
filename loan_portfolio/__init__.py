"""
Loan Portfolio Tracker

Lifecycle tracking for a portfolio of amortizing loans: payment schedules,
derived health status and risk scores, time-sensitive alerts, and
reconciliation of spreadsheet imports against an owner's ledger.
"""

__version__ = "1.0.0"
