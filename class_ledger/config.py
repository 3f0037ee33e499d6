"""
Environment configuration for the class ledger.

Values come from ``CLASS_LEDGER_*`` environment variables or a local
``.env`` file, validated by pydantic-settings.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import AdminPolicy, RENEWAL_PERIOD_DAYS


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CLASS_LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite:///class_ledger.db"
    database_echo: bool = False

    # Dates are calendar dates in the studio's timezone
    timezone: str = "UTC"

    # Credit rules
    default_admin_policy: AdminPolicy = AdminPolicy.OVERRIDE
    max_overdraft: int = Field(default=2, ge=0)
    low_credit_threshold: int = Field(default=3, ge=1)
    expiring_window_days: int = Field(default=7, ge=0)
    renewal_period_days: int = Field(default=RENEWAL_PERIOD_DAYS, ge=1)

    # Periodic sweep
    sweep_interval_minutes: int = Field(default=60, ge=1)

    # Logging
    log_level: str = "INFO"
    log_format: str = Field(default="standard", pattern="^(standard|json)$")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
