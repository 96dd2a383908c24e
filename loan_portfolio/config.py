"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class LoanPortfolioConfig(BaseSettings):
    """Loan portfolio tracker configuration"""
    
    model_config = SettingsConfigDict(
        env_prefix="LOAN_PORTFOLIO_",
        env_file=".env",
        extra="ignore",
    )
    
    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "loan_portfolio.db"
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    
    # Notification configuration
    notifications_enabled: bool = True
    notification_webhook_url: str = ""  # Empty = log only
    notification_timeout: float = 5.0
    payment_reminder_days: int = 7
    obligation_reminder_days: int = 14
    
    # Import / export configuration
    max_import_rows: int = 10000
    export_format_version: str = "1.0"


# Global configuration instance
config = LoanPortfolioConfig()


def get_config() -> LoanPortfolioConfig:
    """Get the global configuration instance"""
    return config


def reload_config() -> LoanPortfolioConfig:
    """Reload configuration from environment"""
    global config
    config = LoanPortfolioConfig()
    return config
