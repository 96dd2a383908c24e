"""
Tests for alert generation
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timedelta, timezone
from dataclasses import replace

from loan_portfolio.alerts import format_currency, generate_alerts, mark_read, merge_read_state
from loan_portfolio.exceptions import RecordNotFoundError
from loan_portfolio.models import (
    AlertSeverity, AlertType, Loan, Obligation, ObligationType, Payment, PaymentStatus
)


TODAY = date(2024, 6, 15)
GENERATED_AT = datetime(2024, 6, 15, 9, 0, tzinfo=timezone.utc)


def payment_due_in(days: int, status: PaymentStatus = PaymentStatus.PENDING, number: int = 1) -> Payment:
    return Payment(
        id=f"payment-loan-a-{number}",
        due_date=TODAY + timedelta(days=days),
        amount=Decimal('1250.50'),
        principal_amount=Decimal('1000.00'),
        interest_amount=Decimal('250.50'),
        status=status,
    )


def obligation_due_in(days: int, completed: bool = False) -> Obligation:
    return Obligation(
        id="obligation-1",
        type=ObligationType.REPORTING,
        title="Q2 report",
        due_date=TODAY + timedelta(days=days),
        completed=completed,
    )


def make_loan(payments=(), obligations=(), risk_score: int = 40) -> Loan:
    return Loan(
        id="loan-a",
        borrower="Alpha Co",
        amount=Decimal('50000'),
        interest_rate=Decimal('5'),
        term_months=24,
        start_date=date(2024, 1, 1),
        end_date=date(2026, 1, 1),
        owner_id="alice",
        risk_score=risk_score,
        payment_schedule=list(payments),
        obligations=list(obligations),
    )


def alerts_for(loan: Loan):
    return generate_alerts([loan], TODAY, generated_at=GENERATED_AT)


class TestPaymentAlerts:
    """Alerts raised by scheduled payments"""
    
    def test_overdue_payment_is_high(self):
        alerts = alerts_for(make_loan([payment_due_in(-2)]))
        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.type == AlertType.PAYMENT_OVERDUE
        assert alert.severity == AlertSeverity.HIGH
        assert alert.id == "alert-loan-a-payment-loan-a-1-overdue"
        assert alert.source_item_id == "payment-loan-a-1"
        assert "$1,250.50" in alert.message
        assert not alert.read
    
    @pytest.mark.parametrize("days, severity", [
        (0, AlertSeverity.MEDIUM),
        (3, AlertSeverity.MEDIUM),
        (4, AlertSeverity.LOW),
        (7, AlertSeverity.LOW),
    ])
    def test_payment_due_soon(self, days, severity):
        alerts = alerts_for(make_loan([payment_due_in(days)]))
        assert len(alerts) == 1
        assert alerts[0].type == AlertType.PAYMENT_DUE
        assert alerts[0].severity == severity
        assert alerts[0].id == "alert-loan-a-payment-loan-a-1-due"
    
    def test_payment_outside_window_has_no_alert(self):
        assert alerts_for(make_loan([payment_due_in(8)])) == []
    
    def test_only_pending_payments_alert(self):
        payments = [
            payment_due_in(-5, PaymentStatus.PAID, 1),
            payment_due_in(-3, PaymentStatus.OVERDUE, 2),
            payment_due_in(2, PaymentStatus.PARTIAL, 3),
        ]
        assert alerts_for(make_loan(payments)) == []


class TestObligationAlerts:
    """Alerts raised by obligations"""
    
    def test_overdue_obligation_is_high(self):
        alerts = alerts_for(make_loan(obligations=[obligation_due_in(-1)]))
        assert len(alerts) == 1
        assert alerts[0].type == AlertType.OBLIGATION_DUE
        assert alerts[0].severity == AlertSeverity.HIGH
        assert alerts[0].id == "alert-loan-a-obligation-1-overdue"
    
    @pytest.mark.parametrize("days, severity", [
        (0, AlertSeverity.MEDIUM),
        (7, AlertSeverity.MEDIUM),
        (8, AlertSeverity.LOW),
        (14, AlertSeverity.LOW),
    ])
    def test_obligation_due_soon(self, days, severity):
        alerts = alerts_for(make_loan(obligations=[obligation_due_in(days)]))
        assert [a.severity for a in alerts] == [severity]
        assert "Q2 report" in alerts[0].message
    
    def test_obligation_outside_window_has_no_alert(self):
        assert alerts_for(make_loan(obligations=[obligation_due_in(15)])) == []
    
    def test_completed_obligation_has_no_alert(self):
        assert alerts_for(make_loan(obligations=[obligation_due_in(-10, completed=True)])) == []


class TestRiskAlerts:
    """Loan-level risk warnings"""
    
    def test_risk_at_threshold_has_no_alert(self):
        assert alerts_for(make_loan(risk_score=70)) == []
    
    def test_high_risk_alert(self):
        alerts = alerts_for(make_loan(risk_score=71))
        assert len(alerts) == 1
        assert alerts[0].type == AlertType.RISK_WARNING
        assert alerts[0].severity == AlertSeverity.HIGH
        assert alerts[0].id == "alert-loan-a-risk"
        assert "71" in alerts[0].message
    
    def test_critical_risk_alert(self):
        assert alerts_for(make_loan(risk_score=86))[0].severity == AlertSeverity.CRITICAL
        assert alerts_for(make_loan(risk_score=85))[0].severity == AlertSeverity.HIGH


class TestAlertState:
    """Idempotence and read flags"""
    
    def test_regeneration_is_idempotent(self):
        loan = make_loan([payment_due_in(-1), payment_due_in(2, number=2)],
                         [obligation_due_in(5)], risk_score=90)
        first = generate_alerts([loan], TODAY)
        second = generate_alerts([loan], TODAY)
        assert [a.id for a in first] == [a.id for a in second]
        assert len({a.id for a in first}) == len(first) == 4
    
    def test_read_flags_survive_regeneration(self):
        loan = make_loan([payment_due_in(-1), payment_due_in(2, number=2)])
        previous = mark_read(alerts_for(loan), "alert-loan-a-payment-loan-a-1-overdue")
        merged = merge_read_state(alerts_for(loan), previous)
        read = {a.id: a.read for a in merged}
        assert read["alert-loan-a-payment-loan-a-1-overdue"] is True
        assert read["alert-loan-a-payment-loan-a-2-due"] is False
    
    def test_resolved_alerts_disappear(self):
        loan = make_loan([payment_due_in(-1)])
        previous = mark_read(alerts_for(loan))
        paid = replace(loan, payment_schedule=[payment_due_in(-1, PaymentStatus.PAID)])
        assert merge_read_state(alerts_for(paid), previous) == []
    
    def test_mark_all_read(self):
        loan = make_loan([payment_due_in(-1), payment_due_in(2, number=2)])
        alerts = mark_read(alerts_for(loan))
        assert all(a.read for a in alerts)
    
    def test_mark_unknown_alert(self):
        with pytest.raises(RecordNotFoundError):
            mark_read(alerts_for(make_loan([payment_due_in(-1)])), "alert-missing")
    
    def test_mark_read_returns_copies(self):
        alerts = alerts_for(make_loan([payment_due_in(-1)]))
        mark_read(alerts)
        assert not alerts[0].read


class TestFormatting:
    def test_format_currency(self):
        assert format_currency(Decimal('1234567.891')) == "$1,234,567.89"
        assert format_currency(Decimal('5')) == "$5.00"
