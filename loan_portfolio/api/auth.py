"""
Service wiring and request identity for the HTTP API
"""

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from ..config import LoanPortfolioConfig, get_config
from ..logging_config import get_logger
from ..exceptions import (
    LoanPortfolioError, OwnershipError, PersistenceError, RecordNotFoundError
)
from ..notifications import create_dispatcher
from ..portfolio import LoanPortfolioService
from ..session import OwnerSession
from ..storage import StorageInterface, create_storage


logger = get_logger(__name__)


# Errors endpoints translate with http_error; anything else is a server error
DOMAIN_ERRORS = (LoanPortfolioError, ValueError, ArithmeticError)


class PortfolioSystem:
    """Loan portfolio service with storage and notifications initialized"""
    
    def __init__(self, storage: Optional[StorageInterface] = None,
                 settings: Optional[LoanPortfolioConfig] = None,
                 service: Optional[LoanPortfolioService] = None):
        self.settings = settings or get_config()
        self.storage = storage or create_storage(
            self.settings.storage_backend, self.settings.database_path
        )
        
        dispatcher = None
        if self.settings.notifications_enabled:
            dispatcher = create_dispatcher(
                webhook_url=self.settings.notification_webhook_url,
                timeout=self.settings.notification_timeout,
                payment_reminder_days=self.settings.payment_reminder_days,
                obligation_reminder_days=self.settings.obligation_reminder_days,
            )
        
        self.service = service or LoanPortfolioService(
            self.storage,
            notification_dispatcher=dispatcher,
            max_import_rows=self.settings.max_import_rows,
            export_format_version=self.settings.export_format_version,
        )
        logger.info(
            f"Portfolio system ready (storage: {self.settings.storage_backend}, "
            f"notifications: {'on' if dispatcher else 'off'})"
        )
    
    def close(self) -> None:
        self.storage.close()


# Dependency to get the portfolio system configured on the app
def get_portfolio_system(request: Request) -> PortfolioSystem:
    return request.app.state.portfolio_system


def get_session(
    x_owner_id: Optional[str] = Header(None),
    x_owner_name: Optional[str] = Header(None)
) -> OwnerSession:
    """Owner session from the identity headers set by the upstream identity provider"""
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Owner-Id header"
        )
    return OwnerSession(owner_id=x_owner_id.strip(), display_name=x_owner_name)


def http_error(error: Exception) -> HTTPException:
    """Translate a domain error into the matching HTTP error"""
    if isinstance(error, RecordNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, OwnershipError):
        return HTTPException(status_code=403, detail=str(error))
    if isinstance(error, PersistenceError):
        return HTTPException(status_code=503, detail=str(error))
    # ParseError, ValidationError and malformed values
    return HTTPException(status_code=400, detail=str(error))
