"""
Exception hierarchy for the loan portfolio tracker.

Per-record problems (ValidationError, DuplicateError) are collected into
import results and never abort a batch. Whole-input problems (ParseError)
and store failures (PersistenceError) are raised before anything is
committed.
"""

from typing import Iterable, Optional


class LoanPortfolioError(Exception):
    """Base exception for all loan portfolio errors."""


class ValidationError(LoanPortfolioError, ValueError):
    """Raised when a single record is invalid."""

    def __init__(self, message: str, field: Optional[str] = None, row: Optional[int] = None):
        super().__init__(message)
        self.field = field
        self.row = row


class ParseError(LoanPortfolioError, ValueError):
    """Raised when import input is malformed or lacks required columns."""

    def __init__(self, message: str, found_columns: Optional[Iterable[str]] = None,
                 required_columns: Optional[Iterable[str]] = None):
        self.found_columns = list(found_columns or [])
        self.required_columns = list(required_columns or [])
        if self.found_columns or self.required_columns:
            message = (
                f"{message}. Found columns: {', '.join(self.found_columns) or '(none)'}. "
                f"Required columns: {', '.join(self.required_columns)}"
            )
        super().__init__(message)


class DuplicateError(LoanPortfolioError):
    """Raised when an append-only import record matches an existing loan."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class PersistenceError(LoanPortfolioError):
    """Raised when the persisted store cannot be read or written."""


class RecordNotFoundError(LoanPortfolioError, KeyError):
    """Raised when a referenced loan, payment, obligation or alert does not exist."""

    def __str__(self):
        return str(self.args[0]) if self.args else ""


class OwnershipError(LoanPortfolioError):
    """Raised when the session has no owner or the owner does not manage the loan."""
