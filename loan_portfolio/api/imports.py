"""
Import endpoints
"""

from typing import Any, Dict
from fastapi import APIRouter, HTTPException, Depends

from .auth import DOMAIN_ERRORS, PortfolioSystem, get_portfolio_system, get_session, http_error
from .schemas import ImportRequest
from ..import_normalizer import ImportBatch, parse_delimited_text, parse_spreadsheet_rows
from ..session import OwnerSession


router = APIRouter()


def _normalize_request(request: ImportRequest, max_rows) -> ImportBatch:
    if request.content is not None:
        return parse_delimited_text(request.content, delimiter=request.delimiter, max_rows=max_rows)
    if request.rows is not None:
        return parse_spreadsheet_rows(request.rows, max_rows=max_rows)
    raise HTTPException(status_code=400, detail="Provide either content or rows")


@router.post("/append-only")
async def import_append_only(
    request: ImportRequest,
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Import new loans; rows matching existing loans are skipped"""
    try:
        batch = _normalize_request(request, system.settings.max_import_rows)
        return system.service.import_append_only(session, batch).to_dict()
    except DOMAIN_ERRORS as e:
        raise http_error(e)


@router.post("/reconcile")
async def import_reconcile(
    request: ImportRequest,
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Import loans, updating matching borrowers and creating the rest"""
    try:
        batch = _normalize_request(request, system.settings.max_import_rows)
        return system.service.import_reconcile(session, batch).to_dict()
    except DOMAIN_ERRORS as e:
        raise http_error(e)


@router.post("/export-document")
async def import_export_document(
    document: Dict[str, Any],
    session: OwnerSession = Depends(get_session),
    system: PortfolioSystem = Depends(get_portfolio_system)
):
    """Reconcile a previously exported ledger document"""
    try:
        return system.service.import_export_document(session, document).to_dict()
    except DOMAIN_ERRORS as e:
        raise http_error(e)
