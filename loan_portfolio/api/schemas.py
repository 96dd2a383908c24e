"""
Pydantic schemas for API requests
"""

from decimal import Decimal
from datetime import date
from typing import Any, Dict, List, Optional
from fastapi import HTTPException, Query
from pydantic import BaseModel, Field

from ..models import LoanFilter, LoanStatus, Payment, PaymentStatus


# Loan schemas
class CreateLoanRequest(BaseModel):
    borrower: str
    amount: str = Field(..., description="Principal as a decimal string")
    interest_rate: str = Field(..., description="Annual rate in percent, e.g. \"6.5\"")
    term_months: int
    start_date: date
    end_date: Optional[date] = None
    borrower_email: Optional[str] = None
    borrower_phone: Optional[str] = None
    loan_officer: Optional[str] = None
    tags: List[str] = []


class UpdateLoanRequest(BaseModel):
    borrower: Optional[str] = None
    borrower_email: Optional[str] = None
    borrower_phone: Optional[str] = None
    loan_officer: Optional[str] = None
    tags: Optional[List[str]] = None
    amount: Optional[str] = None
    interest_rate: Optional[str] = None
    term_months: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    
    def changes(self) -> Dict[str, Any]:
        """Fields the client actually sent"""
        return self.model_dump(exclude_none=True)


class PaymentStatusRequest(BaseModel):
    status: str = Field(..., description="pending, paid, overdue or partial")
    paid_date: Optional[date] = None
    paid_amount: Optional[str] = None
    notes: Optional[str] = None


class ScheduleEntryModel(BaseModel):
    id: str
    due_date: date
    amount: str
    principal_amount: str
    interest_amount: str
    status: str = "pending"
    paid_date: Optional[date] = None
    paid_amount: Optional[str] = None
    notes: str = ""
    
    def to_payment(self) -> Payment:
        return Payment(
            id=self.id,
            due_date=self.due_date,
            amount=Decimal(self.amount),
            principal_amount=Decimal(self.principal_amount),
            interest_amount=Decimal(self.interest_amount),
            status=PaymentStatus(self.status),
            paid_date=self.paid_date,
            paid_amount=Decimal(self.paid_amount) if self.paid_amount else None,
            notes=self.notes,
        )


class UpdateScheduleRequest(BaseModel):
    payments: List[ScheduleEntryModel]


# Obligation schemas
class CreateObligationRequest(BaseModel):
    type: str = Field(..., description="financial, reporting, operational or covenant")
    title: str
    due_date: date
    description: str = ""
    notes: str = ""


class UpdateObligationRequest(BaseModel):
    completed: Optional[bool] = None
    completed_date: Optional[date] = None
    title: Optional[str] = None
    due_date: Optional[date] = None
    description: Optional[str] = None
    notes: Optional[str] = None


# History schemas
class NoteRequest(BaseModel):
    content: str
    author: Optional[str] = None


class CommunicationRequest(BaseModel):
    type: str = Field(..., description="email, sms, call, meeting, note or system")
    subject: str
    content: str
    direction: str = "outbound"
    recipient: Optional[str] = None
    status: Optional[str] = None
    related_payment_id: Optional[str] = None
    related_obligation_id: Optional[str] = None


# Import schemas
class ImportRequest(BaseModel):
    content: Optional[str] = Field(None, description="Delimited text including the header row")
    rows: Optional[List[Dict[str, Any]]] = Field(None, description="Spreadsheet row-set")
    delimiter: str = ","


def loan_filter_params(
    status: Optional[List[str]] = Query(None),
    borrower: Optional[List[str]] = Query(None),
    min_amount: Optional[str] = None,
    max_amount: Optional[str] = None,
    start_date_from: Optional[date] = None,
    start_date_to: Optional[date] = None,
    q: Optional[str] = None,
) -> LoanFilter:
    """Loan filter from query parameters"""
    try:
        statuses = [LoanStatus(s) for s in status or []]
        minimum = Decimal(min_amount) if min_amount else None
        maximum = Decimal(max_amount) if max_amount else None
    except (ValueError, ArithmeticError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid filter: {e}")
    
    return LoanFilter(
        statuses=statuses,
        borrowers=list(borrower or []),
        min_amount=minimum,
        max_amount=maximum,
        start_date_from=start_date_from,
        start_date_to=start_date_to,
        search_query=q,
    )
