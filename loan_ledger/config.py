"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LedgerConfig(BaseSettings):
    """Loan ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "loan_ledger.db"

    # Currency configuration (single currency ledger)
    currency: str = "DOP"

    # Optimistic concurrency retry
    conflict_max_attempts: int = 5
    conflict_backoff_seconds: float = 0.01
    conflict_backoff_max_seconds: float = 0.25

    # Receipt upload service
    upload_url: str = ""  # Empty = in-memory uploads (development only)
    upload_api_key: str = ""
    upload_timeout: float = 10.0
    upload_folder: str = "receipts"
    receipt_upload_required: bool = True  # False = best-effort, payment flagged receipt_missing

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Feature flags
    enable_audit_logging: bool = True


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
