"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal, InvalidOperation
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings
from typing import Optional


class EngineConfig(BaseSettings):
    """EMI engine configuration"""

    # Penalty rules
    default_penalty_rate: str = "2.00"  # Percent per annum when a loan carries none

    # Collections windows
    reminder_window_days: int = Field(3, ge=0)       # Reminders for installments due in [today, today+N]
    default_threshold_days: int = Field(90, ge=1)    # Overdue days after which an active loan defaults

    # Collections job execution
    collections_max_workers: int = Field(4, ge=1)
    collections_loan_timeout_seconds: float = Field(30.0, gt=0)
    collections_max_retries: int = Field(2, ge=0)    # Retries for transient (non-domain) failures

    # Numeric precision
    decimal_precision: int = Field(28, ge=10)        # Significant digits for intermediate math, process-wide

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    @field_validator("default_penalty_rate")
    @classmethod
    def _check_penalty_rate(cls, value: str) -> str:
        try:
            rate = Decimal(value)
        except InvalidOperation:
            raise ValueError(f"default_penalty_rate must be a decimal string, got {value!r}")
        if not rate.is_finite() or rate < 0:
            raise ValueError(f"default_penalty_rate must be a non-negative decimal, got {value!r}")
        return value

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        if value.lower() not in ("json", "text"):
            raise ValueError(f"log_format must be 'json' or 'text', got {value!r}")
        return value.lower()

    class Config:
        env_prefix = "EMI_ENGINE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = EngineConfig()


def get_config() -> EngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> EngineConfig:
    """Reload configuration from environment"""
    global config
    config = EngineConfig()
    return config
