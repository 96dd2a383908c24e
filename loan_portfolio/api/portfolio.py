"""
Portfolio statistics and export endpoints
"""

from fastapi import APIRouter, Depends

from .auth import DOMAIN_ERRORS, PortfolioSystem, get_portfolio_system, get_session, http_error
from .schemas import loan_filter_params
from ..models import LoanFilter
from ..session import OwnerSession


router = APIRouter()


@router.get("/stats")
async def get_portfolio_stats(
    loan_filter: LoanFilter = Depends(loan_filter_params),
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Aggregate statistics over the owner's (filtered) loans"""
    try:
        return system.service.get_portfolio_stats(session, loan_filter).to_dict()
    except DOMAIN_ERRORS as e:
        raise http_error(e)


@router.get("/export")
async def export_ledger(
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Export the ledger as a versioned JSON document"""
    try:
        return system.service.export_ledger(session)
    except DOMAIN_ERRORS as e:
        raise http_error(e)
