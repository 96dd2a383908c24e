"""
Ledger Module

One owner's collection of loans keyed by id. Records are never mutated in
place: writes replace the whole record, and batch operations work on a copy
of the ledger that is swapped in only after it has been persisted.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import date, datetime, timezone
from dataclasses import replace
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .models import Loan, LoanFilter, LoanStatus, PortfolioStats
from .enrichment import enrich_loan
from .amortization import calculate_remaining_principal, calculate_total_paid
from .exceptions import RecordNotFoundError


def normalize_identity(value: Optional[str]) -> str:
    """Normalized form used to compare borrower emails and names"""
    return (value or "").strip().lower()


class Ledger:
    """Owner-scoped loan collection"""
    
    def __init__(self, owner_id: str, loans: Iterable[Loan] = ()):
        self.owner_id = owner_id
        self._loans: Dict[str, Loan] = {loan.id: loan for loan in loans}
    
    def __len__(self) -> int:
        return len(self._loans)
    
    def __iter__(self) -> Iterator[Loan]:
        return iter(list(self._loans.values()))
    
    def __contains__(self, loan_id: str) -> bool:
        return loan_id in self._loans
    
    def copy(self) -> 'Ledger':
        """Shallow copy; records are shared because they are replaced, never mutated"""
        return Ledger(self.owner_id, self._loans.values())
    
    def as_of(self, today: date) -> 'Ledger':
        """Copy with status and risk derived for the given date"""
        return Ledger(self.owner_id, (enrich_loan(loan, today) for loan in self._loans.values()))
    
    def get(self, loan_id: str) -> Optional[Loan]:
        return self._loans.get(loan_id)
    
    def require(self, loan_id: str) -> Loan:
        loan = self._loans.get(loan_id)
        if loan is None:
            raise RecordNotFoundError(f"Loan {loan_id} not found")
        return loan
    
    def all(self) -> List[Loan]:
        return list(self._loans.values())
    
    def upsert(self, loan: Loan, today: date) -> Loan:
        """Enrich and store a loan, replacing any record with the same id"""
        enriched = enrich_loan(loan, today)
        enriched = replace(enriched, updated_at=datetime.now(timezone.utc))
        self._loans[enriched.id] = enriched
        return enriched
    
    def remove(self, loan_id: str) -> Loan:
        loan = self.require(loan_id)
        del self._loans[loan_id]
        return loan
    
    def find_by_borrower(self, email: Optional[str] = None, name: Optional[str] = None) -> List[Loan]:
        """Loans whose borrower email or name (or stored identifier) matches"""
        email = normalize_identity(email)
        name = normalize_identity(name)
        matches = []
        for loan in self._loans.values():
            identifier = normalize_identity(loan.borrower_identifier)
            if email and email in (normalize_identity(loan.borrower_email), identifier):
                matches.append(loan)
            elif name and name in (normalize_identity(loan.borrower), identifier):
                matches.append(loan)
        return matches
    
    def filter_loans(self, loan_filter: Optional[LoanFilter] = None) -> List[Loan]:
        return filter_loans(self._loans.values(), loan_filter)
    
    def portfolio_stats(self, loan_filter: Optional[LoanFilter] = None) -> PortfolioStats:
        return calculate_portfolio_stats(self.filter_loans(loan_filter))
    
    def to_list(self) -> List[Dict[str, Any]]:
        return [loan.to_dict() for loan in self._loans.values()]
    
    @classmethod
    def from_list(cls, owner_id: str, data: Iterable[Dict[str, Any]]) -> 'Ledger':
        return cls(owner_id, (Loan.from_dict(item) for item in data))


def _matches_search(loan: Loan, query: str) -> bool:
    haystack = [loan.borrower, loan.id, loan.borrower_email or ""] + list(loan.tags)
    return any(query in value.lower() for value in haystack)


def filter_loans(loans: Iterable[Loan], loan_filter: Optional[LoanFilter] = None) -> List[Loan]:
    """Apply a LoanFilter; unset criteria match everything"""
    if loan_filter is None:
        return list(loans)
    
    query = normalize_identity(loan_filter.search_query)
    results = []
    
    for loan in loans:
        if loan_filter.statuses and loan.status not in loan_filter.statuses:
            continue
        if loan_filter.borrowers and loan.borrower not in loan_filter.borrowers:
            continue
        if loan_filter.min_amount is not None and loan.amount < loan_filter.min_amount:
            continue
        if loan_filter.max_amount is not None and loan.amount > loan_filter.max_amount:
            continue
        if loan_filter.start_date_from and loan.start_date < loan_filter.start_date_from:
            continue
        if loan_filter.start_date_to and loan.start_date > loan_filter.start_date_to:
            continue
        if query and not _matches_search(loan, query):
            continue
        results.append(loan)
    
    return results


def calculate_portfolio_stats(loans: Iterable[Loan]) -> PortfolioStats:
    """Aggregate counts and amounts for a set of loans"""
    loans = list(loans)
    cent = Decimal('0.01')
    
    total_amount = sum((loan.amount for loan in loans), Decimal('0'))
    weighted_interest = sum((loan.amount * loan.interest_rate for loan in loans), Decimal('0'))
    
    if total_amount > 0:
        weighted_avg_interest = (weighted_interest / total_amount).quantize(cent, rounding=ROUND_HALF_UP)
    else:
        weighted_avg_interest = Decimal('0.00')
    
    if loans:
        average_risk = (Decimal(sum(loan.risk_score for loan in loans)) / Decimal(len(loans))).quantize(
            cent, rounding=ROUND_HALF_UP
        )
    else:
        average_risk = Decimal('0.00')
    
    def count(*statuses: LoanStatus) -> int:
        return sum(1 for loan in loans if loan.status in statuses)
    
    return PortfolioStats(
        total_loans=len(loans),
        total_amount=total_amount,
        active_loans=len(loans) - count(LoanStatus.PAID_OFF, LoanStatus.DEFAULTED),
        overdue_loans=count(LoanStatus.OVERDUE),
        at_risk_loans=count(LoanStatus.AT_RISK),
        defaulted_loans=count(LoanStatus.DEFAULTED),
        paid_off_loans=count(LoanStatus.PAID_OFF),
        weighted_avg_interest=weighted_avg_interest,
        total_outstanding=sum(
            (calculate_remaining_principal(loan.payment_schedule) for loan in loans), Decimal('0')
        ),
        total_paid=sum((calculate_total_paid(loan.payment_schedule) for loan in loans), Decimal('0')),
        average_risk_score=average_risk,
    )
