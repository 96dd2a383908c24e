"""
Amortization Module

Builds fixed-payment (equal installment) monthly schedules for loans and
provides the calendar arithmetic the rest of the tracker relies on.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import date
from typing import List, Union
import calendar

from .models import Payment, PaymentStatus, to_decimal


CENT = Decimal('0.01')

Number = Union[Decimal, int, str]


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping the day to the end of the target month"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def calculate_end_date(start_date: date, term_months: int) -> date:
    """Maturity date: start date plus the loan term"""
    return add_months(start_date, term_months)


def periodic_rate(annual_rate: Number) -> Decimal:
    """Monthly rate as a fraction from an annual percentage"""
    return to_decimal(annual_rate, 'interest_rate') / Decimal('100') / Decimal('12')


def calculate_monthly_payment(principal: Number, annual_rate: Number, term_months: int) -> Decimal:
    """
    Calculate the fixed monthly payment (unrounded).
    
    Standard annuity formula: P * [c(1+c)^n] / [(1+c)^n - 1], where c is
    the monthly rate. A zero rate divides the principal evenly; a zero term
    yields a zero payment.
    """
    principal = to_decimal(principal)
    if term_months <= 0:
        return Decimal('0')
    
    rate = periodic_rate(annual_rate)
    num_payments = Decimal(term_months)
    
    if rate == Decimal('0'):
        return principal / num_payments
    
    factor = (Decimal('1') + rate) ** term_months
    return principal * (rate * factor) / (factor - Decimal('1'))


def generate_payment_schedule(loan_id: str, principal: Number, annual_rate: Number,
                              term_months: int, start_date: date) -> List[Payment]:
    """
    Generate an equal installment amortization schedule.
    
    Args:
        loan_id: Loan the payments belong to; used to derive payment ids
        principal: Amount borrowed
        annual_rate: Annual interest rate in percent
        term_months: Number of monthly periods
        start_date: Loan start; period k falls k months later
        
    Returns:
        One pending payment per period, ascending by due date. Amounts are
        rounded to cents and the final period absorbs the rounding residue
        so principal portions sum to the loan amount exactly.
    """
    principal = to_decimal(principal)
    rate = periodic_rate(annual_rate)
    payment_amount = calculate_monthly_payment(principal, annual_rate, term_months).quantize(
        CENT, rounding=ROUND_HALF_UP
    )
    
    schedule = []
    remaining_balance = principal
    
    for payment_num in range(1, term_months + 1):
        # Interest on remaining balance
        interest_amount = (remaining_balance * rate).quantize(CENT, rounding=ROUND_HALF_UP)
        principal_amount = payment_amount - interest_amount
        
        # Final payment (or an early payoff from rounding) takes exactly what's left
        if payment_num == term_months or principal_amount > remaining_balance:
            principal_amount = remaining_balance
        
        remaining_balance = remaining_balance - principal_amount
        
        schedule.append(Payment(
            id=f"payment-{loan_id}-{payment_num}",
            due_date=add_months(start_date, payment_num),
            amount=principal_amount + interest_amount,
            principal_amount=principal_amount,
            interest_amount=interest_amount,
            status=PaymentStatus.PENDING,
            paid_date=None,
        ))
    
    return schedule


def calculate_total_interest(schedule: List[Payment]) -> Decimal:
    """Total interest over the life of the schedule"""
    return sum((p.interest_amount for p in schedule), Decimal('0'))


def calculate_remaining_principal(schedule: List[Payment]) -> Decimal:
    """Principal not yet covered by paid installments"""
    return sum(
        (p.principal_amount for p in schedule if p.status != PaymentStatus.PAID),
        Decimal('0')
    )


def calculate_total_paid(schedule: List[Payment]) -> Decimal:
    """Cash received: full amounts for paid installments, recorded amounts for partial ones"""
    total = Decimal('0')
    for payment in schedule:
        if payment.status == PaymentStatus.PAID:
            total += payment.paid_amount if payment.paid_amount is not None else payment.amount
        elif payment.status == PaymentStatus.PARTIAL and payment.paid_amount is not None:
            total += payment.paid_amount
    return total
