#!/usr/bin/env python3
"""
Loan Portfolio Tracker Entry Point

Starts the FastAPI server with settings from the LOAN_PORTFOLIO_* environment.
"""

import sys

import uvicorn

from loan_portfolio.api import create_app
from loan_portfolio.config import get_config
from loan_portfolio.logging_config import setup_logging


def main() -> None:
    settings = get_config()
    logger = setup_logging(settings.log_level, format_type=settings.log_format)
    
    logger.info(
        f"Starting Loan Portfolio Tracker on {settings.api_host}:{settings.api_port} "
        f"(storage: {settings.storage_backend})"
    )
    
    try:
        uvicorn.run(
            create_app(),
            host=settings.api_host,
            port=settings.api_port,
            log_level=settings.log_level.lower(),
        )
    except KeyboardInterrupt:
        logger.info("Shutting down Loan Portfolio Tracker")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
