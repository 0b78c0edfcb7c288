"""
Recurring Billing Engine - Settings
Loaded from RBE_* environment variables (or a .env file).
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class BillingSettings(BaseSettings):
    """Engine settings with validation."""

    model_config = SettingsConfigDict(
        env_prefix="RBE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    service_name: str = "Recurring Billing Engine"
    version: str = "1.0.0"

    administrator: str = Field(default="ADMIN-001", min_length=1)
    engine_identity: str = Field(default="RBE-ENGINE", min_length=1)

    min_interval: int = Field(default=86_400, gt=0)
    max_amount: int = Field(default=100_000_000_000, gt=0)
    # Allowance the subscriber must have granted before registering
    min_allowance: int = Field(default=100_000_000_000, ge=0)

    decision_secret: SecretStr = SecretStr("RBE_DECISION_SECRET_ROTATE_QUARTERLY")

    # In-memory retention; None keeps every entry
    decision_ledger_max_entries: Optional[int] = Field(default=None, ge=1)
    notification_max_entries: Optional[int] = Field(default=None, ge=1)


@lru_cache
def get_settings() -> BillingSettings:
    return BillingSettings()
