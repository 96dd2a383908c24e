"""
Loan enrichment.

Every write into a ledger passes through enrich_loan so the cached status
and risk score always reflect the record as stored.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import date
from dataclasses import dataclass, replace
from typing import Dict

from dateutil.relativedelta import relativedelta

from .models import Loan, PaymentStatus
from .status import derive_loan_status
from .risk import calculate_risk_score


def enrich_loan(loan: Loan, today: date) -> Loan:
    """Return a copy of the loan with status and risk score recomputed for today"""
    status = derive_loan_status(loan.payment_schedule, loan.obligations, today)
    risk_score = calculate_risk_score(loan, status, today)
    return replace(
        loan,
        status=status,
        risk_score=risk_score,
        payment_schedule=list(loan.payment_schedule),
        obligations=list(loan.obligations),
        notes=list(loan.notes),
        communications=list(loan.communications),
        tags=list(loan.tags),
    )


@dataclass
class LoanProgress:
    """Percent complete along three axes plus a weighted blend"""
    time: Decimal
    payments: Decimal
    amount: Decimal
    overall: Decimal
    
    def to_dict(self) -> Dict[str, str]:
        return {
            'time': str(self.time),
            'payments': str(self.payments),
            'amount': str(self.amount),
            'overall': str(self.overall),
        }


def _months_between(later: date, earlier: date) -> int:
    delta = relativedelta(later, earlier)
    return delta.years * 12 + delta.months


def _percent(part: Decimal, whole: Decimal) -> Decimal:
    if whole <= 0:
        return Decimal('0')
    return part / whole * Decimal('100')


def calculate_loan_progress(loan: Loan, today: date) -> LoanProgress:
    """
    Calculate how far along a loan is.
    
    Time progress is elapsed whole months over the full term, payment
    progress is the share of installments paid, amount progress is cash
    received (paid and partial installments) over the scheduled total. The
    overall figure weights them 30/40/30.
    """
    hundred = Decimal('100')
    cent = Decimal('0.01')
    
    total_months = _months_between(loan.end_date, loan.start_date)
    elapsed_months = _months_between(today, loan.start_date)
    time_progress = _percent(Decimal(elapsed_months), Decimal(total_months))
    time_progress = max(Decimal('0'), min(hundred, time_progress))
    
    schedule = loan.payment_schedule
    paid_count = sum(1 for p in schedule if p.status == PaymentStatus.PAID)
    payment_progress = _percent(Decimal(paid_count), Decimal(len(schedule)))
    
    total_amount = sum((p.amount for p in schedule), Decimal('0'))
    paid_amount = sum(
        (p.paid_amount if p.paid_amount is not None else p.amount
         for p in schedule if p.status in (PaymentStatus.PAID, PaymentStatus.PARTIAL)),
        Decimal('0')
    )
    amount_progress = _percent(paid_amount, total_amount)
    
    overall = (time_progress * Decimal('0.3') + payment_progress * Decimal('0.4')
               + amount_progress * Decimal('0.3'))
    
    return LoanProgress(
        time=time_progress.quantize(cent, rounding=ROUND_HALF_UP),
        payments=payment_progress.quantize(cent, rounding=ROUND_HALF_UP),
        amount=amount_progress.quantize(cent, rounding=ROUND_HALF_UP),
        overall=overall.quantize(cent, rounding=ROUND_HALF_UP),
    )
