"""Configuration settings for the TTB compliance engine."""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class FlatSettings(BaseSettings):
    """Flat settings read from environment variables or a .env file.

    Regulator figures (rates, threshold, tolerance) have no defaults: they
    change with legislation and must be supplied by the operator.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    database_url: str = Field(
        default="sqlite:///ttb_compliance.db", validation_alias="TTB_DATABASE_URL"
    )
    query_batch_size: int = Field(default=500, gt=0, validation_alias="TTB_QUERY_BATCH_SIZE")

    # Excise tax
    standard_rate: Decimal = Field(..., ge=0, validation_alias="TTB_STANDARD_RATE")
    reduced_rate: Decimal = Field(..., ge=0, validation_alias="TTB_REDUCED_RATE")
    reduced_rate_threshold: Decimal = Field(
        ..., ge=0, validation_alias="TTB_REDUCED_RATE_THRESHOLD"
    )
    annual_production_limit: Decimal | None = Field(
        default=None, ge=0, validation_alias="TTB_ANNUAL_PRODUCTION_LIMIT"
    )

    # Reconciliation
    reconciliation_tolerance: Decimal = Field(
        ..., ge=0, validation_alias="TTB_RECONCILIATION_TOLERANCE"
    )
    large_variance_ratio: Decimal = Field(
        default=Decimal("0.05"), ge=0, validation_alias="TTB_LARGE_VARIANCE_RATIO"
    )

    # Company profiles
    companies_dir: Path | None = Field(default=None, validation_alias="TTB_COMPANIES_DIR")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_format: Literal["json", "console"] = Field(
        default="console", validation_alias="LOG_FORMAT"
    )

    @field_validator("annual_production_limit", "companies_dir", mode="before")
    @classmethod
    def _blank_is_unset(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


@lru_cache
def get_settings() -> FlatSettings:
    """Get cached settings instance."""
    return FlatSettings()
