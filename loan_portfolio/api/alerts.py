"""
Alert endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends

from .auth import DOMAIN_ERRORS, PortfolioSystem, get_portfolio_system, get_session, http_error
from ..session import OwnerSession


router = APIRouter()


@router.get("")
async def list_alerts(
    unread_only: bool = False,
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Alerts from the most recent scan"""
    try:
        alerts = system.service.get_alerts(session, unread_only=unread_only)
    except DOMAIN_ERRORS as e:
        raise http_error(e)
    return {
        "alerts": [a.to_dict() for a in alerts],
        "unread": sum(1 for a in alerts if not a.read)
    }


@router.post("/generate")
async def generate_alerts(
    as_of: Optional[date] = None,
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Rescan the ledger and rebuild the alert set"""
    try:
        alerts = system.service.generate_alerts(session, today=as_of)
    except DOMAIN_ERRORS as e:
        raise http_error(e)
    return {"alerts": [a.to_dict() for a in alerts], "count": len(alerts)}


@router.post("/read-all")
async def mark_all_read(
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Mark every alert read"""
    try:
        marked = system.service.mark_all_alerts_read(session)
    except DOMAIN_ERRORS as e:
        raise http_error(e)
    return {"marked": marked}


@router.post("/{alert_id}/read")
async def mark_read(
    alert_id: str,
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Mark one alert read"""
    try:
        return system.service.mark_alert_read(session, alert_id).to_dict()
    except DOMAIN_ERRORS as e:
        raise http_error(e)
