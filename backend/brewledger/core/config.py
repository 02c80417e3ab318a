"""Application configuration using pydantic-settings.

All environment variables should be accessed through the settings object
rather than using os.getenv() directly. Engine tuning lives in
``InventoryEngineSettings`` (``INVENTORY_`` prefix) so it can be read on its
own by workers and tests.
"""

from functools import lru_cache
from typing import List, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class InventoryEngineSettings(BaseSettings):
    """Deduction engine behaviour.

    Every field can be overridden with an ``INVENTORY_<FIELD>`` variable,
    e.g. ``INVENTORY_STOCK_POLICY=permissive``.
    """

    model_config = SettingsConfigDict(
        env_prefix="INVENTORY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # strict: refuse any deduction that would take stock below zero
    # permissive: clamp at zero, commit, raise an urgent alert
    stock_policy: Literal["strict", "permissive"] = "strict"

    # Decimal places kept on persisted quantities
    quantity_precision: int = 3

    # Queue retry behaviour
    max_attempts: int = 5
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 300.0
    processing_timeout_seconds: float = 120.0

    # Worker runtime
    workers_enabled: bool = True
    deduction_workers: int = 2
    queue_poll_seconds: float = 1.0
    low_stock_sweep_seconds: float = 300.0

    # Cancellation
    auto_reverse_on_cancel: bool = True
    cancel_wait_seconds: float = 30.0
    cancel_poll_seconds: float = 0.25

    # Housekeeping
    completed_retention_days: int = 7

    @field_validator("max_attempts", "deduction_workers")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator(
        "backoff_base_seconds",
        "backoff_max_seconds",
        "processing_timeout_seconds",
        "queue_poll_seconds",
        "low_stock_sweep_seconds",
        "cancel_poll_seconds",
    )
    @classmethod
    def validate_positive_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("interval must be greater than zero")
        return v

    @field_validator("quantity_precision")
    @classmethod
    def validate_precision(cls, v: int) -> int:
        if not 0 <= v <= 6:
            raise ValueError("quantity_precision must be between 0 and 6")
        return v

    @property
    def strict(self) -> bool:
        return self.stock_policy == "strict"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database - relative path for local/dev, PostgreSQL URL in production
    database_url: str = "sqlite:///./data/brewledger.db"

    # CORS - comma-separated origins or "*" for development only
    cors_origins: str = "http://localhost:3000,http://localhost:8000"

    # Server
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # API
    api_v1_prefix: str = "/api/v1"

    # Rate limiting
    rate_limit_enabled: bool = True

    inventory: InventoryEngineSettings = Field(default_factory=InventoryEngineSettings)

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
