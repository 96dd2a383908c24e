"""
Borrower Notification Module

Sends automated borrower reminders when an alert scan sees a schedule item
cross a boundary: a payment exactly 7 days out, an obligation exactly 14
days out, or either one newly overdue. Each (loan, item, kind) is notified
at most once; the keys already sent are kept by the caller in the persisted
store. Every notification also becomes an automated outbound Communication
on the loan.
"""

from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set
from enum import Enum
from abc import ABC, abstractmethod
import logging
import uuid

import requests

from .alerts import format_currency
from .models import (
    Communication, CommunicationDirection, CommunicationType, Loan, PaymentStatus
)


logger = logging.getLogger(__name__)


class NotificationType(Enum):
    """Borrower notification kinds"""
    PAYMENT_REMINDER = "payment_reminder"
    PAYMENT_OVERDUE = "payment_overdue"
    OBLIGATION_REMINDER = "obligation_reminder"


TEMPLATES = {
    NotificationType.PAYMENT_REMINDER: (
        "Payment Reminder: {amount}",
        "Dear {borrower},\n\nThis is a reminder that your payment of {amount} is due on "
        "{due_date}.\n\nPlease ensure payment is made on time to avoid any late fees.\n\nThank you."
    ),
    NotificationType.PAYMENT_OVERDUE: (
        "Overdue Payment Notice",
        "Dear {borrower},\n\nYour payment of {amount} was due on {due_date} and is now overdue."
        "\n\nPlease contact us immediately to arrange payment.\n\nThank you."
    ),
    NotificationType.OBLIGATION_REMINDER: (
        "Obligation Reminder: {title}",
        "Dear {borrower},\n\nThis is a reminder that {title} is due on {due_date}."
        "\n\nPlease ensure this is completed on time.\n\nThank you."
    ),
}


@dataclass
class Notification:
    """A rendered borrower notification"""
    key: str                            # loan:item:kind, used to send once
    loan_id: str
    notification_type: NotificationType
    recipient: str
    subject: str
    body: str
    created_at: datetime
    related_payment_id: Optional[str] = None
    related_obligation_id: Optional[str] = None
    id: str = field(default_factory=lambda: f"notification-{uuid.uuid4().hex[:12]}")


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""

    @abstractmethod
    def send(self, notification: Notification) -> bool:
        """Send notification via this channel. Returns True if successful."""
        pass


class LogChannelProvider(ChannelProvider):
    """Logs notifications instead of delivering them"""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.logger = log or logger

    def send(self, notification: Notification) -> bool:
        self.logger.info(
            f"EMAIL to {notification.recipient}: {notification.subject} | "
            f"{notification.body[:100]}"
        )
        return True


class WebhookChannelProvider(ChannelProvider):
    """Posts notifications to an external delivery service"""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def send(self, notification: Notification) -> bool:
        """Send notification via webhook POST"""
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "loan_id": notification.loan_id,
            "recipient": notification.recipient,
            "subject": notification.subject,
            "body": notification.body,
            "timestamp": notification.created_at.isoformat(),
            "related_payment_id": notification.related_payment_id,
            "related_obligation_id": notification.related_obligation_id,
        }
        try:
            response = requests.post(
                self.url,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            logger.error(f"Webhook send failed for {notification.key}: {e}")
            return False

        if not 200 <= response.status_code < 300:
            logger.error(f"Webhook returned {response.status_code} for {notification.key}")
            return False
        return True


@dataclass
class DispatchResult:
    """Communications to append per loan, and the keys that were delivered"""
    communications: Dict[str, List[Communication]] = field(default_factory=dict)
    sent_keys: Set[str] = field(default_factory=set)
    failed: int = 0
    failed_keys: Set[str] = field(default_factory=set)


class NotificationDispatcher:
    """Finds boundary crossings in a set of loans and sends each one once"""

    def __init__(self, provider: Optional[ChannelProvider] = None,
                 payment_reminder_days: int = 7, obligation_reminder_days: int = 14):
        self.provider = provider or LogChannelProvider()
        self.payment_reminder_days = payment_reminder_days
        self.obligation_reminder_days = obligation_reminder_days

    def _render(self, notification_type: NotificationType, loan: Loan, key: str,
                now: datetime, **data) -> Notification:
        subject_template, body_template = TEMPLATES[notification_type]
        data = {"borrower": loan.borrower, **data}
        return Notification(
            key=key,
            loan_id=loan.id,
            notification_type=notification_type,
            recipient=loan.borrower_email or "",
            subject=subject_template.format(**data),
            body=body_template.format(**data),
            created_at=now,
            related_payment_id=data.get("payment_id"),
            related_obligation_id=data.get("obligation_id"),
        )

    def find_notifications(self, loan: Loan, today: date,
                           now: Optional[datetime] = None) -> List[Notification]:
        """Boundary notifications due for one loan, ignoring what was already sent"""
        if not loan.borrower_email:
            return []
        now = now or datetime.now(timezone.utc)
        notifications = []

        for payment in loan.payment_schedule:
            if payment.status != PaymentStatus.PENDING:
                continue
            days_until = (payment.due_date - today).days
            data = {
                "amount": format_currency(payment.amount),
                "due_date": payment.due_date.strftime("%b %d, %Y"),
                "payment_id": payment.id,
            }
            if days_until < 0:
                notifications.append(self._render(
                    NotificationType.PAYMENT_OVERDUE, loan, f"{loan.id}:{payment.id}:overdue", now, **data
                ))
            elif days_until == self.payment_reminder_days:
                notifications.append(self._render(
                    NotificationType.PAYMENT_REMINDER, loan, f"{loan.id}:{payment.id}:reminder", now, **data
                ))

        for obligation in loan.obligations:
            if obligation.completed:
                continue
            days_until = (obligation.due_date - today).days
            data = {
                "title": obligation.title,
                "due_date": obligation.due_date.strftime("%b %d, %Y"),
                "obligation_id": obligation.id,
            }
            if days_until < 0:
                notifications.append(self._render(
                    NotificationType.OBLIGATION_REMINDER, loan, f"{loan.id}:{obligation.id}:overdue", now, **data
                ))
            elif days_until == self.obligation_reminder_days:
                notifications.append(self._render(
                    NotificationType.OBLIGATION_REMINDER, loan, f"{loan.id}:{obligation.id}:reminder", now, **data
                ))

        return notifications

    def dispatch(self, loans: Iterable[Loan], today: date,
                 already_sent: Optional[Set[str]] = None,
                 already_failed: Optional[Set[str]] = None) -> DispatchResult:
        """
        Send every boundary notification not yet delivered.

        Args:
            loans: Loans to scan
            today: Evaluation date
            already_sent: Keys delivered by earlier scans
            already_failed: Keys whose failure is already on the loan's history

        Returns:
            DispatchResult with an automated Communication for each delivery
            and for each first failure of a key, plus the keys delivered and
            failed this time. Failed sends are retried on the next scan.
        """
        already_sent = already_sent or set()
        already_failed = already_failed or set()
        result = DispatchResult()

        for loan in loans:
            for notification in self.find_notifications(loan, today):
                if notification.key in already_sent:
                    continue

                delivered = self.provider.send(notification)
                if delivered:
                    result.sent_keys.add(notification.key)
                else:
                    result.failed += 1
                    result.failed_keys.add(notification.key)
                    if notification.key in already_failed:
                        continue

                result.communications.setdefault(loan.id, []).append(Communication(
                    id=f"comm-{uuid.uuid4().hex[:12]}",
                    loan_id=loan.id,
                    type=CommunicationType.EMAIL,
                    direction=CommunicationDirection.OUTBOUND,
                    subject=notification.subject,
                    content=notification.body,
                    date=notification.created_at,
                    author="System",
                    recipient=notification.recipient,
                    status="sent" if delivered else "failed",
                    automated=True,
                    related_payment_id=notification.related_payment_id,
                    related_obligation_id=notification.related_obligation_id,
                ))

        if result.sent_keys or result.failed:
            logger.info(f"Sent {len(result.sent_keys)} borrower notifications ({result.failed} failed)")
        return result


def create_dispatcher(webhook_url: str = "", timeout: float = 5.0,
                      payment_reminder_days: int = 7,
                      obligation_reminder_days: int = 14) -> NotificationDispatcher:
    """Dispatcher using the webhook channel when a URL is configured, logging otherwise"""
    provider: ChannelProvider
    if webhook_url:
        provider = WebhookChannelProvider(webhook_url, timeout=timeout)
    else:
        provider = LogChannelProvider()
    return NotificationDispatcher(
        provider,
        payment_reminder_days=payment_reminder_days,
        obligation_reminder_days=obligation_reminder_days,
    )
