"""
Test suite for amortization module

Tests annuity payment calculation, schedule generation and the calendar
arithmetic used for due dates. All money math must be exact to the cent.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_portfolio.amortization import (
    add_months, calculate_end_date, calculate_monthly_payment, generate_payment_schedule,
    calculate_total_interest, calculate_remaining_principal, calculate_total_paid
)
from loan_portfolio.models import PaymentStatus
from dataclasses import replace


class TestAddMonths:
    """Test month arithmetic"""
    
    def test_simple_month_addition(self):
        assert add_months(date(2024, 1, 15), 1) == date(2024, 2, 15)
        assert add_months(date(2024, 1, 15), 12) == date(2025, 1, 15)
    
    def test_year_rollover(self):
        assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)
    
    def test_clamps_to_month_end(self):
        """Day 31 clamps to the last day of shorter months"""
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 3, 31), 1) == date(2024, 4, 30)
    
    def test_end_date_is_start_plus_term(self):
        assert calculate_end_date(date(2024, 1, 15), 36) == date(2027, 1, 15)


class TestMonthlyPayment:
    """Test the fixed monthly payment formula"""
    
    def test_standard_annuity(self):
        """120,000 at 6% over 36 months"""
        payment = calculate_monthly_payment(Decimal('120000'), Decimal('6'), 36)
        assert payment.quantize(Decimal('0.01')) == Decimal('3650.63')
    
    def test_zero_rate_divides_evenly(self):
        payment = calculate_monthly_payment(Decimal('12000'), Decimal('0'), 12)
        assert payment == Decimal('1000')
    
    def test_zero_term_yields_zero(self):
        assert calculate_monthly_payment(Decimal('12000'), Decimal('5'), 0) == Decimal('0')


class TestPaymentSchedule:
    """Test equal installment schedule generation"""
    
    @pytest.fixture
    def schedule(self):
        return generate_payment_schedule(
            "loan-1", Decimal('120000'), Decimal('6'), 36, date(2024, 1, 15)
        )
    
    def test_schedule_length_and_status(self, schedule):
        assert len(schedule) == 36
        assert all(p.status == PaymentStatus.PENDING for p in schedule)
        assert all(p.paid_date is None for p in schedule)
    
    def test_first_payment_split(self, schedule):
        """First period: 0.5% interest on the full principal"""
        first = schedule[0]
        assert first.id == "payment-loan-1-1"
        assert first.due_date == date(2024, 2, 15)
        assert first.amount == Decimal('3650.63')
        assert first.interest_amount == Decimal('600.00')
        assert first.principal_amount == Decimal('3050.63')
    
    def test_due_dates_advance_monthly(self, schedule):
        assert schedule[11].due_date == date(2025, 1, 15)
        assert schedule[-1].due_date == date(2027, 1, 15)
        due_dates = [p.due_date for p in schedule]
        assert due_dates == sorted(due_dates)
    
    def test_principal_sums_to_loan_amount(self, schedule):
        total_principal = sum(p.principal_amount for p in schedule)
        assert total_principal == Decimal('120000')
    
    def test_components_add_up(self, schedule):
        for payment in schedule:
            assert payment.amount == payment.principal_amount + payment.interest_amount
    
    def test_level_payments_except_last(self, schedule):
        amounts = {p.amount for p in schedule[:-1]}
        assert amounts == {Decimal('3650.63')}
        assert abs(schedule[-1].amount - Decimal('3650.63')) < Decimal('1.00')
    
    def test_zero_rate_schedule(self):
        schedule = generate_payment_schedule("loan-z", Decimal('1000'), Decimal('0'), 3, date(2024, 1, 1))
        assert [p.amount for p in schedule] == [Decimal('333.33'), Decimal('333.33'), Decimal('333.34')]
        assert all(p.interest_amount == Decimal('0') for p in schedule)
    
    def test_month_end_start_date(self):
        schedule = generate_payment_schedule("loan-m", Decimal('3000'), Decimal('5'), 3, date(2024, 1, 31))
        assert [p.due_date for p in schedule] == [date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)]


class TestScheduleTotals:
    """Test totals derived from a schedule"""
    
    def test_totals(self):
        schedule = generate_payment_schedule("loan-t", Decimal('12000'), Decimal('12'), 12, date(2024, 1, 1))
        total_interest = calculate_total_interest(schedule)
        assert total_interest == sum(p.interest_amount for p in schedule)
        assert calculate_remaining_principal(schedule) == Decimal('12000')
        assert calculate_total_paid(schedule) == Decimal('0')
        
        schedule[0] = replace(schedule[0], status=PaymentStatus.PAID, paid_date=date(2024, 2, 1))
        schedule[1] = replace(schedule[1], status=PaymentStatus.PARTIAL, paid_amount=Decimal('100'))
        
        assert calculate_remaining_principal(schedule) == Decimal('12000') - schedule[0].principal_amount
        assert calculate_total_paid(schedule) == schedule[0].amount + Decimal('100')
