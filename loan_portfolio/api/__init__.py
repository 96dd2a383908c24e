"""
Loan Portfolio API Application Factory
"""

from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from .auth import PortfolioSystem
from .loans import router as loans_router
from .imports import router as imports_router
from .alerts import router as alerts_router
from .portfolio import router as portfolio_router


def create_app(system: Optional[PortfolioSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Loan Portfolio Tracker API",
        description="Loan lifecycle tracking: schedules, health status, risk, alerts and imports",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.portfolio_system = system or PortfolioSystem()

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    
    # Include routers
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(imports_router, prefix="/imports", tags=["Imports"])
    app.include_router(alerts_router, prefix="/alerts", tags=["Alerts"])
    app.include_router(portfolio_router, prefix="/portfolio", tags=["Portfolio"])
    
    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_portfolio_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Loan Portfolio Tracker API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "loans": "/loans",
                "imports": "/imports",
                "alerts": "/alerts",
                "portfolio": "/portfolio",
            }
        }
    
    return app
