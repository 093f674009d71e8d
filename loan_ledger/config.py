"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LoanLedgerConfig(BaseSettings):
    """Loan ledger engine configuration"""

    # Storage configuration
    database_path: str = "loan_ledger.db"  # ":memory:" for in-memory storage

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_currency: str = "USD"
    extra_payment_epsilon: str = "1.00"  # Balance at or below this settles the loan
    max_installments: int = 1000
    default_loan_icon: str = "🏦"
    upcoming_payment_days: int = 7

    # Concurrency
    concurrency_retry_attempts: int = 3

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LOAN_LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LoanLedgerConfig()


def get_config() -> LoanLedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanLedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LoanLedgerConfig()
    return config
