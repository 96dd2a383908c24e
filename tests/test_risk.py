"""
Tests for risk scoring
"""

import pytest
from decimal import Decimal
from datetime import date, timedelta

from loan_portfolio.models import (
    Loan, LoanStatus, Obligation, ObligationType, Payment, PaymentStatus
)
from loan_portfolio.risk import calculate_risk_score
from loan_portfolio.status import derive_loan_status


TODAY = date(2024, 6, 15)


def make_loan(statuses, end_date=date(2030, 1, 1), obligations=None) -> Loan:
    schedule = [
        Payment(
            id=f"payment-{i}",
            due_date=TODAY - timedelta(days=30 * (len(statuses) - 1 - i)),
            amount=Decimal('110.00'),
            principal_amount=Decimal('100.00'),
            interest_amount=Decimal('10.00'),
            status=status,
        )
        for i, status in enumerate(statuses)
    ]
    return Loan(
        id="loan-risk",
        borrower="Risky Business LLC",
        amount=Decimal('1000'),
        interest_rate=Decimal('8'),
        term_months=len(statuses) or 1,
        start_date=date(2023, 1, 1),
        end_date=end_date,
        owner_id="alice",
        payment_schedule=schedule,
        obligations=obligations or [],
    )


def score(loan: Loan) -> int:
    status = derive_loan_status(loan.payment_schedule, loan.obligations, TODAY)
    return calculate_risk_score(loan, status, TODAY)


class TestRiskScore:
    """Test risk score components"""
    
    def test_payment_due_today_adds_at_risk_weight(self):
        loan = make_loan([PaymentStatus.PAID, PaymentStatus.PENDING])
        # Last payment due today puts the loan at risk (+15)
        assert score(loan) == 65
    
    def test_on_track_loan_far_from_maturity(self):
        loan = make_loan([PaymentStatus.PAID])
        loan.payment_schedule.append(Payment(
            id="payment-future", due_date=TODAY + timedelta(days=60),
            amount=Decimal('110.00'), principal_amount=Decimal('100.00'),
            interest_amount=Decimal('10.00'),
        ))
        assert score(loan) == 50
    
    def test_paid_off_lowers_score(self):
        loan = make_loan([PaymentStatus.PAID, PaymentStatus.PAID])
        assert score(loan) == 30
    
    def test_overdue_payments_raise_score(self):
        loan = make_loan([PaymentStatus.OVERDUE, PaymentStatus.PAID, PaymentStatus.PAID, PaymentStatus.PAID])
        # 50 + 30 * 1/4 + 25 (overdue)
        assert score(loan) == 83
    
    def test_defaulted_loan_is_capped_at_100(self):
        loan = make_loan([PaymentStatus.OVERDUE] * 3)
        assert score(loan) == 100
    
    def test_missed_obligations_raise_score(self):
        obligations = [
            Obligation(id="o-1", type=ObligationType.FINANCIAL, title="Audit",
                       due_date=TODAY - timedelta(days=10)),
            Obligation(id="o-2", type=ObligationType.FINANCIAL, title="Budget",
                       due_date=TODAY + timedelta(days=10)),
        ]
        loan = make_loan([PaymentStatus.PAID], obligations=obligations)
        loan.payment_schedule.append(Payment(
            id="payment-future", due_date=TODAY + timedelta(days=60),
            amount=Decimal('110.00'), principal_amount=Decimal('100.00'),
            interest_amount=Decimal('10.00'),
        ))
        # 50 + 20 * 1/2 + 15 (past due obligation -> at risk)
        assert score(loan) == 75
    
    def test_approaching_maturity_raises_score(self):
        loan = make_loan([PaymentStatus.PAID, PaymentStatus.PAID], end_date=TODAY + timedelta(days=45))
        # 50 + 20 * 45/90 - 20 (paid off)
        assert score(loan) == 40
    
    def test_matured_loan_gets_full_maturity_weight(self):
        loan = make_loan([PaymentStatus.PAID, PaymentStatus.PAID], end_date=TODAY - timedelta(days=30))
        assert score(loan) == 50
    
    @pytest.mark.parametrize("statuses", [
        [],
        [PaymentStatus.PAID] * 5,
        [PaymentStatus.OVERDUE] * 10,
        [PaymentStatus.PENDING] * 3,
        [PaymentStatus.PARTIAL, PaymentStatus.OVERDUE],
    ])
    @pytest.mark.parametrize("days_to_maturity", [-400, 0, 30, 1000])
    def test_score_is_bounded(self, statuses, days_to_maturity):
        loan = make_loan(statuses, end_date=TODAY + timedelta(days=days_to_maturity))
        assert 0 <= score(loan) <= 100
