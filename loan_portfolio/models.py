"""
Loan Portfolio Data Model

Dataclasses for loans and their schedules, obligations, notes,
communications and alerts. All monetary values are Decimal and are stored as
Decimal strings; dates are stored as ISO strings.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum

from .exceptions import ValidationError


class LoanStatus(Enum):
    """Derived loan health states"""
    ON_TRACK = "on_track"      # No overdue or imminent items
    AT_RISK = "at_risk"        # Payment due within a week or obligation past due
    OVERDUE = "overdue"        # At least one overdue payment
    DEFAULTED = "defaulted"    # Three or more overdue payments
    PAID_OFF = "paid_off"      # Every scheduled payment paid


class PaymentStatus(Enum):
    """Scheduled payment states"""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    PARTIAL = "partial"


class ObligationType(Enum):
    """Kinds of non-payment borrower obligations"""
    FINANCIAL = "financial"        # e.g. audited statements
    REPORTING = "reporting"        # e.g. quarterly reports
    OPERATIONAL = "operational"
    COVENANT = "covenant"          # e.g. debt service coverage tests


class CommunicationType(Enum):
    """Borrower communication channels"""
    EMAIL = "email"
    SMS = "sms"
    CALL = "call"
    MEETING = "meeting"
    NOTE = "note"
    SYSTEM = "system"


class CommunicationDirection(Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


class AlertType(Enum):
    """Alert categories raised by the alert scan"""
    PAYMENT_DUE = "payment_due"
    PAYMENT_OVERDUE = "payment_overdue"
    OBLIGATION_DUE = "obligation_due"
    RISK_WARNING = "risk_warning"


class AlertSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


def to_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """Convert a stored or user-supplied value to Decimal"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid numeric value for {field_name}: {value!r}", field=field_name)


def to_date(value: Any, field_name: str = "date") -> date:
    """Convert an ISO string (date or datetime) to a date"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"Invalid date for {field_name}: {value!r}", field=field_name)


def to_datetime(value: Any) -> datetime:
    """Convert an ISO string to an aware datetime"""
    if isinstance(value, datetime):
        result = value
    elif isinstance(value, date):
        result = datetime(value.year, value.month, value.day)
    else:
        text = str(value).replace("Z", "+00:00")
        result = datetime.fromisoformat(text)
    if result.tzinfo is None:
        result = result.replace(tzinfo=timezone.utc)
    return result


def _optional_date(value: Any) -> Optional[date]:
    return to_date(value) if value else None


def _optional_decimal(value: Any) -> Optional[Decimal]:
    return to_decimal(value) if value not in (None, "") else None


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Payment:
    """One period of a loan's payment schedule"""
    id: str
    due_date: date
    amount: Decimal
    principal_amount: Decimal
    interest_amount: Decimal
    status: PaymentStatus = PaymentStatus.PENDING
    paid_date: Optional[date] = None
    paid_amount: Optional[Decimal] = None
    notes: str = ""
    
    def __post_init__(self):
        """Validate payment components"""
        if abs(self.amount - (self.principal_amount + self.interest_amount)) > Decimal('0.01'):
            raise ValidationError(
                f"Payment {self.id}: amount {self.amount} does not equal principal "
                f"{self.principal_amount} plus interest {self.interest_amount}",
                field="amount"
            )
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'due_date': self.due_date.isoformat(),
            'amount': str(self.amount),
            'principal_amount': str(self.principal_amount),
            'interest_amount': str(self.interest_amount),
            'status': self.status.value,
            'paid_date': self.paid_date.isoformat() if self.paid_date else None,
            'paid_amount': str(self.paid_amount) if self.paid_amount is not None else None,
            'notes': self.notes,
        }
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            id=data['id'],
            due_date=to_date(data['due_date'], 'due_date'),
            amount=to_decimal(data['amount']),
            principal_amount=to_decimal(data['principal_amount'], 'principal_amount'),
            interest_amount=to_decimal(data['interest_amount'], 'interest_amount'),
            status=PaymentStatus(data.get('status', 'pending')),
            paid_date=_optional_date(data.get('paid_date')),
            paid_amount=_optional_decimal(data.get('paid_amount')),
            notes=data.get('notes') or "",
        )


@dataclass
class Obligation:
    """Non-payment duty the borrower must complete by a due date"""
    id: str
    type: ObligationType
    title: str
    due_date: date
    completed: bool = False
    completed_date: Optional[date] = None
    description: str = ""
    notes: str = ""
    documents: List[str] = field(default_factory=list)
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type.value,
            'title': self.title,
            'due_date': self.due_date.isoformat(),
            'completed': self.completed,
            'completed_date': self.completed_date.isoformat() if self.completed_date else None,
            'description': self.description,
            'notes': self.notes,
            'documents': list(self.documents),
        }
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Obligation':
        return cls(
            id=data['id'],
            type=ObligationType(data.get('type', 'reporting')),
            title=data.get('title') or "",
            due_date=to_date(data['due_date'], 'due_date'),
            completed=bool(data.get('completed', False)),
            completed_date=_optional_date(data.get('completed_date')),
            description=data.get('description') or "",
            notes=data.get('notes') or "",
            documents=list(data.get('documents') or []),
        )


@dataclass
class Note:
    id: str
    date: datetime
    author: str
    content: str
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'date': self.date.isoformat(),
            'author': self.author,
            'content': self.content,
        }
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Note':
        return cls(
            id=data['id'],
            date=to_datetime(data['date']),
            author=data.get('author') or "",
            content=data.get('content') or "",
        )


@dataclass
class Communication:
    """Logged interaction with a borrower"""
    id: str
    loan_id: str
    type: CommunicationType
    direction: CommunicationDirection
    subject: str
    content: str
    date: datetime
    author: str
    recipient: Optional[str] = None
    status: Optional[str] = None       # e.g. "sent", "failed"
    automated: bool = False
    related_payment_id: Optional[str] = None
    related_obligation_id: Optional[str] = None
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'type': self.type.value,
            'direction': self.direction.value,
            'subject': self.subject,
            'content': self.content,
            'date': self.date.isoformat(),
            'author': self.author,
            'recipient': self.recipient,
            'status': self.status,
            'automated': self.automated,
            'related_payment_id': self.related_payment_id,
            'related_obligation_id': self.related_obligation_id,
        }
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Communication':
        return cls(
            id=data['id'],
            loan_id=data.get('loan_id') or "",
            type=CommunicationType(data.get('type', 'note')),
            direction=CommunicationDirection(data.get('direction', 'outbound')),
            subject=data.get('subject') or "",
            content=data.get('content') or "",
            date=to_datetime(data['date']),
            author=data.get('author') or "",
            recipient=data.get('recipient'),
            status=data.get('status'),
            automated=bool(data.get('automated', False)),
            related_payment_id=data.get('related_payment_id'),
            related_obligation_id=data.get('related_obligation_id'),
        )


@dataclass
class Loan:
    """A tracked loan with its schedule, obligations and history"""
    id: str
    borrower: str
    amount: Decimal                     # Principal
    interest_rate: Decimal              # Annual percent, e.g. 6.5 for 6.5%
    term_months: int
    start_date: date
    end_date: date
    owner_id: str                       # Portfolio owner who manages the loan
    borrower_email: Optional[str] = None
    borrower_phone: Optional[str] = None
    loan_officer: Optional[str] = None
    borrower_identifier: Optional[str] = None  # Normalized email or name
    status: LoanStatus = LoanStatus.ON_TRACK   # Derived, never caller-set
    risk_score: int = 50                       # Derived, 0-100
    payment_schedule: List[Payment] = field(default_factory=list)
    obligations: List[Obligation] = field(default_factory=list)
    notes: List[Note] = field(default_factory=list)
    communications: List[Communication] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    
    def __post_init__(self):
        """Validate loan terms"""
        if not self.borrower or not self.borrower.strip():
            raise ValidationError("Borrower name is required", field="borrower")
        if self.amount <= 0:
            raise ValidationError(f"Loan amount must be positive, got {self.amount}", field="amount")
        if self.interest_rate < 0:
            raise ValidationError(
                f"Interest rate cannot be negative, got {self.interest_rate}", field="interest_rate"
            )
        if self.term_months <= 0:
            raise ValidationError(f"Term must be positive, got {self.term_months}", field="term_months")
    
    def find_payment(self, payment_id: str) -> Optional[Payment]:
        for payment in self.payment_schedule:
            if payment.id == payment_id:
                return payment
        return None
    
    def find_obligation(self, obligation_id: str) -> Optional[Obligation]:
        for obligation in self.obligations:
            if obligation.id == obligation_id:
                return obligation
        return None
    
    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage and export"""
        return {
            'id': self.id,
            'borrower': self.borrower,
            'borrower_email': self.borrower_email,
            'borrower_phone': self.borrower_phone,
            'loan_officer': self.loan_officer,
            'borrower_identifier': self.borrower_identifier,
            'amount': str(self.amount),
            'interest_rate': str(self.interest_rate),
            'term_months': self.term_months,
            'start_date': self.start_date.isoformat(),
            'end_date': self.end_date.isoformat(),
            'status': self.status.value,
            'risk_score': self.risk_score,
            'owner_id': self.owner_id,
            'payment_schedule': [p.to_dict() for p in self.payment_schedule],
            'obligations': [o.to_dict() for o in self.obligations],
            'notes': [n.to_dict() for n in self.notes],
            'communications': [c.to_dict() for c in self.communications],
            'tags': list(self.tags),
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        """Create instance from dictionary"""
        return cls(
            id=data['id'],
            borrower=data['borrower'],
            borrower_email=data.get('borrower_email'),
            borrower_phone=data.get('borrower_phone'),
            loan_officer=data.get('loan_officer'),
            borrower_identifier=data.get('borrower_identifier'),
            amount=to_decimal(data['amount']),
            interest_rate=to_decimal(data['interest_rate'], 'interest_rate'),
            term_months=int(data['term_months']),
            start_date=to_date(data['start_date'], 'start_date'),
            end_date=to_date(data['end_date'], 'end_date'),
            status=LoanStatus(data.get('status', 'on_track')),
            risk_score=int(data.get('risk_score', 50)),
            owner_id=data.get('owner_id') or "",
            payment_schedule=[Payment.from_dict(p) for p in data.get('payment_schedule') or []],
            obligations=[Obligation.from_dict(o) for o in data.get('obligations') or []],
            notes=[Note.from_dict(n) for n in data.get('notes') or []],
            communications=[Communication.from_dict(c) for c in data.get('communications') or []],
            tags=list(data.get('tags') or []),
            created_at=to_datetime(data['created_at']) if data.get('created_at') else _now(),
            updated_at=to_datetime(data['updated_at']) if data.get('updated_at') else _now(),
        )


@dataclass
class LoanCandidate:
    """Normalized record produced by an import, not yet matched or owned"""
    borrower: str
    amount: Decimal
    interest_rate: Decimal
    term_months: int
    start_date: date
    end_date: Optional[date] = None
    borrower_email: Optional[str] = None
    borrower_phone: Optional[str] = None
    loan_officer: Optional[str] = None
    status: Optional[str] = None        # As reported by the source; informational only
    id: Optional[str] = None            # Present when re-importing an export document
    payment_schedule: List[Payment] = field(default_factory=list)
    obligations: List[Obligation] = field(default_factory=list)
    notes: List[Note] = field(default_factory=list)
    communications: List[Communication] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    source_row: Optional[int] = None    # 1-based data row in the source


@dataclass
class Alert:
    """Time-sensitive notice derived from a loan's schedule, obligations or risk"""
    id: str
    loan_id: str
    type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    date: datetime
    read: bool = False
    source_item_id: Optional[str] = None
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'type': self.type.value,
            'severity': self.severity.value,
            'title': self.title,
            'message': self.message,
            'date': self.date.isoformat(),
            'read': self.read,
            'source_item_id': self.source_item_id,
        }
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Alert':
        return cls(
            id=data['id'],
            loan_id=data['loan_id'],
            type=AlertType(data['type']),
            severity=AlertSeverity(data['severity']),
            title=data.get('title') or "",
            message=data.get('message') or "",
            date=to_datetime(data['date']),
            read=bool(data.get('read', False)),
            source_item_id=data.get('source_item_id'),
        )


@dataclass
class LoanFilter:
    """Criteria for narrowing a loan listing; empty criteria match everything"""
    statuses: List[LoanStatus] = field(default_factory=list)
    borrowers: List[str] = field(default_factory=list)
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    start_date_from: Optional[date] = None
    start_date_to: Optional[date] = None
    search_query: Optional[str] = None


@dataclass
class PortfolioStats:
    """Aggregate view over a set of loans"""
    total_loans: int
    total_amount: Decimal
    active_loans: int
    overdue_loans: int
    at_risk_loans: int
    defaulted_loans: int
    paid_off_loans: int
    weighted_avg_interest: Decimal
    total_outstanding: Decimal
    total_paid: Decimal
    average_risk_score: Decimal
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_loans': self.total_loans,
            'total_amount': str(self.total_amount),
            'active_loans': self.active_loans,
            'overdue_loans': self.overdue_loans,
            'at_risk_loans': self.at_risk_loans,
            'defaulted_loans': self.defaulted_loans,
            'paid_off_loans': self.paid_off_loans,
            'weighted_avg_interest': str(self.weighted_avg_interest),
            'total_outstanding': str(self.total_outstanding),
            'total_paid': str(self.total_paid),
            'average_risk_score': str(self.average_risk_score),
        }


@dataclass
class SkippedRecord:
    """An input record that was not imported, and why"""
    row: Optional[int]
    reason: str
    field: Optional[str] = None
    borrower: Optional[str] = None
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            'row': self.row,
            'reason': self.reason,
            'field': self.field,
            'borrower': self.borrower,
        }
