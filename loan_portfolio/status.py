"""
Loan status derivation.

Status is a pure function of the payment schedule, the obligations and the
evaluation date. Rules are checked in priority order; the first match wins.
"""

from datetime import date
from typing import List

from .models import LoanStatus, Obligation, Payment, PaymentStatus


DEFAULT_OVERDUE_THRESHOLD = 3
AT_RISK_WINDOW_DAYS = 7


def count_overdue_payments(schedule: List[Payment]) -> int:
    return sum(1 for p in schedule if p.status == PaymentStatus.OVERDUE)


def has_payment_due_soon(schedule: List[Payment], today: date,
                         window_days: int = AT_RISK_WINDOW_DAYS) -> bool:
    """True if a pending payment falls due within the next window_days (inclusive)"""
    for payment in schedule:
        if payment.status != PaymentStatus.PENDING:
            continue
        days_until = (payment.due_date - today).days
        if 0 <= days_until <= window_days:
            return True
    return False


def has_past_due_obligation(obligations: List[Obligation], today: date) -> bool:
    return any(not o.completed and o.due_date < today for o in obligations)


def derive_loan_status(schedule: List[Payment], obligations: List[Obligation],
                       today: date) -> LoanStatus:
    """
    Derive the loan health status.
    
    Priority:
        1. defaulted - three or more overdue payments
        2. paid_off  - every payment paid (obligations are not considered)
        3. overdue   - any overdue payment
        4. at_risk   - pending payment due within 7 days, or an incomplete
                       obligation whose due date has passed
        5. on_track
    """
    overdue_count = count_overdue_payments(schedule)
    
    if overdue_count >= DEFAULT_OVERDUE_THRESHOLD:
        return LoanStatus.DEFAULTED
    
    if all(p.status == PaymentStatus.PAID for p in schedule):
        return LoanStatus.PAID_OFF
    
    if overdue_count > 0:
        return LoanStatus.OVERDUE
    
    if has_payment_due_soon(schedule, today) or has_past_due_obligation(obligations, today):
        return LoanStatus.AT_RISK
    
    return LoanStatus.ON_TRACK
