"""
Reconciliation Module

Matches imported loan candidates against an owner's ledger and merges them
in. Two modes are supported:

- reconcile: a candidate matching an existing loan (by borrower email, then
  by borrower name) updates it in place; everything else becomes a new loan.
- append-only: candidates never overwrite; anything that looks like a loan
  already in the ledger (same id, or same borrower, amount and start date)
  is skipped as a duplicate.

Both work on the ledger they are given. Callers pass a working copy and
commit it only when the whole batch has been applied and persisted.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Set, Tuple
import logging
import time
import uuid

from .amortization import CENT, generate_payment_schedule
from .exceptions import DuplicateError
from .ledger import Ledger, normalize_identity
from .models import Loan, LoanCandidate, SkippedRecord


logger = logging.getLogger(__name__)

MODE_RECONCILE = "reconcile"
MODE_APPEND_ONLY = "append_only"


@dataclass
class ImportDetail:
    """What happened to one accepted candidate"""
    loan_id: str
    borrower: str
    action: str                        # "created" or "updated"
    matched_by: Optional[str] = None   # "email" or "name" for updates
    row: Optional[int] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            'loan_id': self.loan_id,
            'borrower': self.borrower,
            'action': self.action,
            'matched_by': self.matched_by,
            'row': self.row,
        }


@dataclass
class ImportResult:
    """Outcome of an import batch"""
    mode: str
    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: List[SkippedRecord] = field(default_factory=list)   # invalid rows and duplicates
    errors: List[SkippedRecord] = field(default_factory=list)    # failures while merging
    details: List[ImportDetail] = field(default_factory=list)

    @property
    def imported(self) -> int:
        return self.created + self.updated

    def to_dict(self) -> Dict[str, object]:
        return {
            'mode': self.mode,
            'total': self.total,
            'imported': self.imported,
            'created': self.created,
            'updated': self.updated,
            'skipped': [s.to_dict() for s in self.skipped],
            'errors': [e.to_dict() for e in self.errors],
            'details': [d.to_dict() for d in self.details],
        }


def generate_loan_id() -> str:
    """New loan id: millisecond timestamp plus a random nonce, unique across concurrent imports"""
    return f"loan-{int(time.time() * 1000)}-{uuid.uuid4().hex[:12]}"


def borrower_identifier(email: Optional[str], name: Optional[str]) -> Optional[str]:
    """Stable borrower key: normalized email when present, otherwise normalized name"""
    return normalize_identity(email) or normalize_identity(name) or None


def composite_key(borrower: str, amount: Decimal, start_date: date) -> str:
    """Append-only duplicate key: normalized borrower, amount to the cent, start date"""
    return f"{normalize_identity(borrower)}_{amount.quantize(CENT)}_{start_date.isoformat()}"


def match_existing_loan(candidate: LoanCandidate, loans: Iterable[Loan]) -> Tuple[Optional[Loan], Optional[str]]:
    """
    Find the loan a candidate refers to.

    Email is tried first against each loan's email and borrower identifier,
    then the borrower name against each loan's name and identifier.

    Returns:
        (loan, "email" | "name") or (None, None)
    """
    loans = list(loans)
    email = normalize_identity(candidate.borrower_email)
    name = normalize_identity(candidate.borrower)

    if email:
        for loan in loans:
            if email in (normalize_identity(loan.borrower_email),
                         normalize_identity(loan.borrower_identifier)):
                return loan, "email"

    if name:
        for loan in loans:
            if name in (normalize_identity(loan.borrower),
                        normalize_identity(loan.borrower_identifier)):
                return loan, "name"

    return None, None


def merge_candidate(existing: Loan, candidate: LoanCandidate) -> Loan:
    """
    Merge an imported candidate into an existing loan.

    Non-empty candidate fields overwrite. The existing schedule,
    obligations, notes and communications are kept; only an empty schedule
    is rebuilt from the merged terms. Id and owner never change.
    """
    borrower = candidate.borrower or existing.borrower
    borrower_email = candidate.borrower_email or existing.borrower_email
    amount = candidate.amount or existing.amount
    interest_rate = candidate.interest_rate if candidate.interest_rate is not None else existing.interest_rate
    term_months = candidate.term_months or existing.term_months
    start_date = candidate.start_date or existing.start_date

    if existing.payment_schedule:
        schedule = existing.payment_schedule
    elif candidate.payment_schedule:
        schedule = candidate.payment_schedule
    else:
        schedule = generate_payment_schedule(existing.id, amount, interest_rate, term_months, start_date)

    return replace(
        existing,
        borrower=borrower,
        borrower_email=borrower_email,
        borrower_phone=candidate.borrower_phone or existing.borrower_phone,
        loan_officer=candidate.loan_officer or existing.loan_officer,
        borrower_identifier=borrower_identifier(borrower_email, borrower) or existing.borrower_identifier,
        amount=amount,
        interest_rate=interest_rate,
        term_months=term_months,
        start_date=start_date,
        end_date=candidate.end_date or existing.end_date,
        payment_schedule=list(schedule),
        obligations=list(existing.obligations or candidate.obligations),
        notes=list(existing.notes or candidate.notes),
        communications=list(existing.communications or candidate.communications),
        tags=list(candidate.tags or existing.tags),
    )


def build_new_loan(candidate: LoanCandidate, owner_id: str, loan_id: str) -> Loan:
    """Create a loan record for an unmatched candidate"""
    if candidate.payment_schedule and candidate.id == loan_id:
        schedule = list(candidate.payment_schedule)
    else:
        schedule = generate_payment_schedule(
            loan_id, candidate.amount, candidate.interest_rate,
            candidate.term_months, candidate.start_date
        )

    return Loan(
        id=loan_id,
        borrower=candidate.borrower,
        borrower_email=candidate.borrower_email,
        borrower_phone=candidate.borrower_phone,
        loan_officer=candidate.loan_officer,
        borrower_identifier=borrower_identifier(candidate.borrower_email, candidate.borrower),
        amount=candidate.amount,
        interest_rate=candidate.interest_rate,
        term_months=candidate.term_months,
        start_date=candidate.start_date,
        end_date=candidate.end_date,
        owner_id=owner_id,
        payment_schedule=schedule,
        obligations=list(candidate.obligations),
        notes=list(candidate.notes),
        communications=[replace(c, loan_id=loan_id) for c in candidate.communications],
        tags=list(candidate.tags),
    )


def _new_loan_id(candidate: LoanCandidate, ledger: Ledger) -> str:
    # Exported loans keep their id when it is free in this ledger
    if candidate.id and candidate.id not in ledger:
        return candidate.id
    return generate_loan_id()


def _record_error(candidate: LoanCandidate, error: Exception) -> SkippedRecord:
    return SkippedRecord(
        row=candidate.source_row,
        reason=str(error),
        field=getattr(error, 'field', None),
        borrower=candidate.borrower,
    )


def reconcile(candidates: Iterable[LoanCandidate], ledger: Ledger, today: date) -> ImportResult:
    """
    Update-or-create every candidate in the ledger.

    Args:
        candidates: Normalized import records
        ledger: Working ledger to apply the batch to
        today: Evaluation date for status and risk

    Returns:
        ImportResult with created/updated counts, per-record errors and details
    """
    candidates = list(candidates)
    result = ImportResult(mode=MODE_RECONCILE, total=len(candidates))

    for candidate in candidates:
        try:
            existing, matched_by = match_existing_loan(candidate, ledger.all())
            if existing is not None:
                loan = ledger.upsert(merge_candidate(existing, candidate), today)
                result.updated += 1
                result.details.append(ImportDetail(
                    loan_id=loan.id, borrower=loan.borrower, action="updated",
                    matched_by=matched_by, row=candidate.source_row,
                ))
            else:
                loan_id = _new_loan_id(candidate, ledger)
                loan = ledger.upsert(build_new_loan(candidate, ledger.owner_id, loan_id), today)
                result.created += 1
                result.details.append(ImportDetail(
                    loan_id=loan.id, borrower=loan.borrower, action="created",
                    row=candidate.source_row,
                ))
        except (ValueError, ArithmeticError) as e:
            logger.warning(f"Failed to reconcile {candidate.borrower!r}: {e}")
            result.errors.append(_record_error(candidate, e))

    logger.info(
        f"Reconciled {result.total} records for {ledger.owner_id}: "
        f"{result.updated} updated, {result.created} created, {len(result.errors)} errors"
    )
    return result


def _check_duplicate(candidate: LoanCandidate, known_ids: Set[str], known_keys: Set[str]) -> str:
    key = composite_key(candidate.borrower, candidate.amount, candidate.start_date)
    if candidate.id and candidate.id in known_ids:
        raise DuplicateError(f"Loan {candidate.id} already exists", key=candidate.id)
    if key in known_keys:
        raise DuplicateError(
            f"Duplicate loan for {candidate.borrower} ({candidate.amount} from "
            f"{candidate.start_date.isoformat()})",
            key=key,
        )
    return key


def append_only_import(candidates: Iterable[LoanCandidate], ledger: Ledger, today: date) -> ImportResult:
    """
    Add candidates as new loans, skipping duplicates.

    Duplicates are detected against the ledger and against earlier records
    of the same batch.
    """
    candidates = list(candidates)
    result = ImportResult(mode=MODE_APPEND_ONLY, total=len(candidates))
    known_ids = {loan.id for loan in ledger}
    known_keys = {composite_key(loan.borrower, loan.amount, loan.start_date) for loan in ledger}

    for candidate in candidates:
        try:
            key = _check_duplicate(candidate, known_ids, known_keys)
        except DuplicateError as e:
            logger.warning(f"Skipping duplicate: {e}")
            result.skipped.append(_record_error(candidate, e))
            continue

        try:
            loan_id = _new_loan_id(candidate, ledger)
            loan = ledger.upsert(build_new_loan(candidate, ledger.owner_id, loan_id), today)
        except (ValueError, ArithmeticError) as e:
            logger.warning(f"Failed to import {candidate.borrower!r}: {e}")
            result.errors.append(_record_error(candidate, e))
            continue

        known_ids.add(loan.id)
        known_keys.add(key)
        result.created += 1
        result.details.append(ImportDetail(
            loan_id=loan.id, borrower=loan.borrower, action="created", row=candidate.source_row,
        ))

    logger.info(
        f"Append-only import for {ledger.owner_id}: {result.created} added, "
        f"{len(result.skipped)} skipped, {len(result.errors)} errors"
    )
    return result
