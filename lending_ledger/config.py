"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Lending ledger configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///lending_ledger.db"  # memory://, sqlite:///path or postgresql://...
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    api_workers: int = 1
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Ledger rules
    max_metadata_bytes: int = 16 * 1024
    account_number_max_attempts: int = 10
    bank_interest_owner_reference: str = "BANK:INTEREST"
    bank_collections_owner_reference: str = "BANK:COLLECTIONS"
    
    # Loan lifecycle scheduling
    due_day_of_month: int = 28
    accrual_day_of_month: int = 1
    scheduler_workers: int = 4
    scheduler_loan_timeout_seconds: float = 30.0
    
    # Timeline pagination
    default_page_limit: int = 50
    max_page_limit: int = 100
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
