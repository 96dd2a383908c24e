"""
Alert generation.

Alerts are derived on demand from the current ledger. Ids are built from the
loan id, the source item id and the alert kind, so regenerating over the
same data yields the same ids and the read flag can be carried forward.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .models import (
    Alert, AlertSeverity, AlertType, Loan, Obligation, Payment, PaymentStatus
)
from .exceptions import RecordNotFoundError


PAYMENT_DUE_WINDOW_DAYS = 7
PAYMENT_DUE_MEDIUM_DAYS = 3
OBLIGATION_DUE_WINDOW_DAYS = 14
OBLIGATION_DUE_MEDIUM_DAYS = 7
RISK_WARNING_THRESHOLD = 70
RISK_CRITICAL_THRESHOLD = 85


def format_currency(amount: Decimal) -> str:
    return f"${amount:,.2f}"


def alert_id(loan_id: str, source_item_id: Optional[str], kind: str) -> str:
    """Deterministic alert id: alert-{loan}-{item}-{kind}, or alert-{loan}-{kind} for loan-level alerts"""
    if source_item_id:
        return f"alert-{loan_id}-{source_item_id}-{kind}"
    return f"alert-{loan_id}-{kind}"


def _payment_alert(loan: Loan, payment: Payment, today: date, generated_at: datetime) -> Optional[Alert]:
    days_until = (payment.due_date - today).days
    
    if days_until < 0:
        return Alert(
            id=alert_id(loan.id, payment.id, "overdue"),
            loan_id=loan.id,
            type=AlertType.PAYMENT_OVERDUE,
            severity=AlertSeverity.HIGH,
            title=f"Overdue Payment: {loan.borrower}",
            message=f"Payment of {format_currency(payment.amount)} was due on {payment.due_date.isoformat()}",
            date=generated_at,
            source_item_id=payment.id,
        )
    
    if days_until <= PAYMENT_DUE_WINDOW_DAYS:
        severity = AlertSeverity.MEDIUM if days_until <= PAYMENT_DUE_MEDIUM_DAYS else AlertSeverity.LOW
        return Alert(
            id=alert_id(loan.id, payment.id, "due"),
            loan_id=loan.id,
            type=AlertType.PAYMENT_DUE,
            severity=severity,
            title=f"Payment Due Soon: {loan.borrower}",
            message=f"Payment of {format_currency(payment.amount)} due in {days_until} day(s)",
            date=generated_at,
            source_item_id=payment.id,
        )
    
    return None


def _obligation_alert(loan: Loan, obligation: Obligation, today: date,
                      generated_at: datetime) -> Optional[Alert]:
    days_until = (obligation.due_date - today).days
    
    if days_until < 0:
        return Alert(
            id=alert_id(loan.id, obligation.id, "overdue"),
            loan_id=loan.id,
            type=AlertType.OBLIGATION_DUE,
            severity=AlertSeverity.HIGH,
            title=f"Overdue Obligation: {loan.borrower}",
            message=f"{obligation.title} was due on {obligation.due_date.isoformat()}",
            date=generated_at,
            source_item_id=obligation.id,
        )
    
    if days_until <= OBLIGATION_DUE_WINDOW_DAYS:
        severity = AlertSeverity.MEDIUM if days_until <= OBLIGATION_DUE_MEDIUM_DAYS else AlertSeverity.LOW
        return Alert(
            id=alert_id(loan.id, obligation.id, "due"),
            loan_id=loan.id,
            type=AlertType.OBLIGATION_DUE,
            severity=severity,
            title=f"Obligation Due Soon: {loan.borrower}",
            message=f"{obligation.title} due in {days_until} day(s)",
            date=generated_at,
            source_item_id=obligation.id,
        )
    
    return None


def _risk_alert(loan: Loan, generated_at: datetime) -> Optional[Alert]:
    if loan.risk_score <= RISK_WARNING_THRESHOLD:
        return None
    
    severity = AlertSeverity.CRITICAL if loan.risk_score > RISK_CRITICAL_THRESHOLD else AlertSeverity.HIGH
    return Alert(
        id=alert_id(loan.id, None, "risk"),
        loan_id=loan.id,
        type=AlertType.RISK_WARNING,
        severity=severity,
        title=f"High Risk Loan: {loan.borrower}",
        message=f"Loan has a risk score of {loan.risk_score}. Review recommended.",
        date=generated_at,
    )


def generate_alerts(loans: Iterable[Loan], today: date,
                    generated_at: Optional[datetime] = None) -> List[Alert]:
    """
    Generate the full alert set for a collection of loans.
    
    Pending payments alert when overdue or due within 7 days; incomplete
    obligations when overdue or due within 14 days; loans with a risk score
    above 70 raise a risk warning. All alerts are unread.
    """
    generated_at = generated_at or datetime.now(timezone.utc)
    alerts = []
    
    for loan in loans:
        for payment in loan.payment_schedule:
            if payment.status != PaymentStatus.PENDING:
                continue
            alert = _payment_alert(loan, payment, today, generated_at)
            if alert:
                alerts.append(alert)
        
        for obligation in loan.obligations:
            if obligation.completed:
                continue
            alert = _obligation_alert(loan, obligation, today, generated_at)
            if alert:
                alerts.append(alert)
        
        alert = _risk_alert(loan, generated_at)
        if alert:
            alerts.append(alert)
    
    return alerts


def merge_read_state(new_alerts: List[Alert], previous_alerts: Iterable[Alert]) -> List[Alert]:
    """Carry the read flag forward from previously generated alerts with the same id"""
    read_by_id: Dict[str, bool] = {a.id: a.read for a in previous_alerts}
    merged = []
    for alert in new_alerts:
        if read_by_id.get(alert.id):
            alert = replace(alert, read=True)
        merged.append(alert)
    return merged


def mark_read(alerts: List[Alert], alert_id_to_mark: Optional[str] = None) -> List[Alert]:
    """
    Return a copy of the alert list with one alert (or all alerts) marked read.
    
    Raises:
        RecordNotFoundError: If alert_id_to_mark is given and not present
    """
    if alert_id_to_mark is not None and not any(a.id == alert_id_to_mark for a in alerts):
        raise RecordNotFoundError(f"Alert {alert_id_to_mark} not found")
    
    return [
        replace(a, read=True)
        if alert_id_to_mark is None or a.id == alert_id_to_mark else a
        for a in alerts
    ]
