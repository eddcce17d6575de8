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

    # Account whose rows this engine owns
    account_id: str = "default"

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "loan_ledger.db"
    max_field_bytes: Optional[int] = None  # per-field size limit enforced by the store

    # Scheduling configuration
    sweep_interval_seconds: float = 60.0
    operation_timeout_seconds: float = 30.0

    # Business rules configuration
    paid_tolerance: str = "1"  # balance at or below this counts as paid
    currency_symbol: str = "R"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Feature flags
    enable_audit_logging: bool = True
    enable_penalty_sweep: bool = True


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
