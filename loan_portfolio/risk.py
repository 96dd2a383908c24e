"""
Risk scoring.

Scores run from 0 (lowest risk) to 100. A loan starts at 50 and moves with
its payment history, obligation compliance, proximity to maturity and
current status.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import date

from .models import Loan, LoanStatus, PaymentStatus


BASE_SCORE = Decimal('50')
PAYMENT_HISTORY_WEIGHT = Decimal('30')
OBLIGATION_WEIGHT = Decimal('20')
MATURITY_WEIGHT = Decimal('20')
MATURITY_WINDOW_DAYS = 90

STATUS_ADJUSTMENTS = {
    LoanStatus.ON_TRACK: Decimal('0'),
    LoanStatus.AT_RISK: Decimal('15'),
    LoanStatus.OVERDUE: Decimal('25'),
    LoanStatus.DEFAULTED: Decimal('30'),
    LoanStatus.PAID_OFF: Decimal('-20'),
}


def _clamp(value: Decimal, low: Decimal, high: Decimal) -> Decimal:
    return max(low, min(high, value))


def calculate_risk_score(loan: Loan, status: LoanStatus, today: date) -> int:
    """
    Calculate the risk score for a loan.
    
    Args:
        loan: Loan whose schedule, obligations and end date are scored
        status: Status already derived for the same evaluation date
        today: Evaluation date
        
    Returns:
        Integer score in [0, 100]
    """
    score = BASE_SCORE
    
    # Payment history (up to +30)
    total_payments = len(loan.payment_schedule)
    if total_payments > 0:
        overdue = sum(1 for p in loan.payment_schedule if p.status == PaymentStatus.OVERDUE)
        score += PAYMENT_HISTORY_WEIGHT * Decimal(overdue) / Decimal(total_payments)
    
    # Obligation compliance (up to +20)
    total_obligations = len(loan.obligations)
    if total_obligations > 0:
        missed = sum(1 for o in loan.obligations if not o.completed and o.due_date < today)
        score += OBLIGATION_WEIGHT * Decimal(missed) / Decimal(total_obligations)
    
    # Approaching maturity (up to +20)
    days_to_maturity = (loan.end_date - today).days
    if days_to_maturity < MATURITY_WINDOW_DAYS:
        proximity = Decimal(MATURITY_WINDOW_DAYS - days_to_maturity) / Decimal(MATURITY_WINDOW_DAYS)
        score += MATURITY_WEIGHT * _clamp(proximity, Decimal('0'), Decimal('1'))
    
    score += STATUS_ADJUSTMENTS[status]
    
    score = _clamp(score, Decimal('0'), Decimal('100'))
    return int(score.quantize(Decimal('1'), rounding=ROUND_HALF_UP))
