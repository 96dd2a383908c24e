"""
Loan endpoints
"""

from decimal import Decimal
from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, status

from .auth import DOMAIN_ERRORS, PortfolioSystem, get_portfolio_system, get_session, http_error
from .schemas import (
    CommunicationRequest, CreateLoanRequest, CreateObligationRequest, NoteRequest,
    PaymentStatusRequest, UpdateLoanRequest, UpdateObligationRequest, UpdateScheduleRequest,
    loan_filter_params
)
from ..models import LoanFilter
from ..session import OwnerSession


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Create a loan with a generated payment schedule"""
    try:
        loan = system.service.create_loan(
            session,
            borrower=request.borrower,
            amount=Decimal(request.amount),
            interest_rate=Decimal(request.interest_rate),
            term_months=request.term_months,
            start_date=request.start_date,
            end_date=request.end_date,
            borrower_email=request.borrower_email,
            borrower_phone=request.borrower_phone,
            loan_officer=request.loan_officer,
            tags=request.tags,
        )
        return loan.to_dict()

    except DOMAIN_ERRORS as e:
        raise http_error(e)


@router.get("")
async def list_loans(
    loan_filter: LoanFilter = Depends(loan_filter_params),
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """List the owner's loans, optionally filtered"""
    try:
        loans = system.service.get_filtered_loans(session, loan_filter)
    except DOMAIN_ERRORS as e:
        raise http_error(e)

    return {
        "loans": [loan.to_dict() for loan in loans],
        "count": len(loans)
    }


@router.get("/borrower")
async def find_borrower_loans(
    email: Optional[str] = None,
    name: Optional[str] = None,
    across_portfolios: bool = False,
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Find loans by borrower email or name"""
    if not email and not name:
        raise HTTPException(status_code=400, detail="Provide email or name")
    try:
        loans = system.service.find_borrower_loans(
            session, email=email, name=name, across_portfolios=across_portfolios
        )
    except DOMAIN_ERRORS as e:
        raise http_error(e)

    return {"loans": [loan.to_dict() for loan in loans], "count": len(loans)}


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Get loan details"""
    try:
        return system.service.get_loan(session, loan_id).to_dict()
    except DOMAIN_ERRORS as e:
        raise http_error(e)


@router.patch("/{loan_id}")
async def update_loan(
    loan_id: str,
    request: UpdateLoanRequest,
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Edit borrower details or loan terms"""
    try:
        return system.service.update_loan(session, loan_id, **request.changes()).to_dict()
    except DOMAIN_ERRORS as e:
        raise http_error(e)


@router.delete("/{loan_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_loan(
    loan_id: str,
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Delete a loan (owner only)"""
    try:
        system.service.delete_loan(session, loan_id)
    except DOMAIN_ERRORS as e:
        raise http_error(e)


@router.put("/{loan_id}/schedule")
async def update_schedule(
    loan_id: str,
    request: UpdateScheduleRequest,
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Replace the payment schedule"""
    try:
        payments = [entry.to_payment() for entry in request.payments]
        return system.service.update_schedule(session, loan_id, payments).to_dict()
    except DOMAIN_ERRORS as e:
        raise http_error(e)


@router.post("/{loan_id}/payments/{payment_id}")
async def update_payment_status(
    loan_id: str,
    payment_id: str,
    request: PaymentStatusRequest,
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Record a payment outcome"""
    try:
        loan = system.service.update_payment_status(
            session, loan_id, payment_id,
            status=request.status,
            paid_date=request.paid_date,
            paid_amount=Decimal(request.paid_amount) if request.paid_amount else None,
            notes=request.notes,
        )
        return loan.to_dict()
    except DOMAIN_ERRORS as e:
        raise http_error(e)


@router.post("/{loan_id}/obligations", status_code=status.HTTP_201_CREATED)
async def add_obligation(
    loan_id: str,
    request: CreateObligationRequest,
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Add an obligation to a loan"""
    try:
        loan = system.service.add_obligation(
            session, loan_id,
            obligation_type=request.type,
            title=request.title,
            due_date=request.due_date,
            description=request.description,
            notes=request.notes,
        )
        return loan.to_dict()
    except DOMAIN_ERRORS as e:
        raise http_error(e)


@router.patch("/{loan_id}/obligations/{obligation_id}")
async def update_obligation(
    loan_id: str,
    obligation_id: str,
    request: UpdateObligationRequest,
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Update or complete an obligation"""
    changes = request.model_dump(exclude_none=True)
    completed = changes.pop("completed", None)
    completed_date = changes.pop("completed_date", None)
    try:
        loan = system.service.update_obligation(
            session, loan_id, obligation_id,
            completed=completed, completed_date=completed_date, **changes
        )
        return loan.to_dict()
    except DOMAIN_ERRORS as e:
        raise http_error(e)


@router.post("/{loan_id}/notes", status_code=status.HTTP_201_CREATED)
async def add_note(
    loan_id: str,
    request: NoteRequest,
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Append a note to a loan"""
    try:
        loan = system.service.add_note(session, loan_id, request.content, author=request.author)
        return loan.notes[-1].to_dict()
    except DOMAIN_ERRORS as e:
        raise http_error(e)


@router.post("/{loan_id}/communications", status_code=status.HTTP_201_CREATED)
async def add_communication(
    loan_id: str,
    request: CommunicationRequest,
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Log a borrower communication"""
    try:
        communication = system.service.add_communication(
            session, loan_id,
            communication_type=request.type,
            subject=request.subject,
            content=request.content,
            direction=request.direction,
            recipient=request.recipient,
            status=request.status,
            related_payment_id=request.related_payment_id,
            related_obligation_id=request.related_obligation_id,
        )
        return communication.to_dict()
    except DOMAIN_ERRORS as e:
        raise http_error(e)


@router.get("/{loan_id}/communications")
async def get_communications(
    loan_id: str,
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Communications for a loan, newest first"""
    try:
        communications = system.service.get_loan_communications(session, loan_id)
    except DOMAIN_ERRORS as e:
        raise http_error(e)
    return {"communications": [c.to_dict() for c in communications]}


@router.get("/{loan_id}/progress")
async def get_progress(
    loan_id: str,
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Time, payment and amount progress for a loan"""
    try:
        return system.service.get_loan_progress(session, loan_id).to_dict()
    except DOMAIN_ERRORS as e:
        raise http_error(e)
