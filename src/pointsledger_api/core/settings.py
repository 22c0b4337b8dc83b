from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./pointsledger.db"
    database_echo: bool = False
    log_level: str = "INFO"

    # Internal API security
    admin_api_key: str = ""

    # Program defaults (configuration version 0 until an operator publishes one)
    point_value: Decimal = Decimal("0.10")
    min_points_redeem: int = 100
    points_expiry_days: int = Field(default=365, ge=1, le=36500)
    points_per_currency: Decimal = Decimal("1.00")
    min_order_points: Decimal = Decimal("10.00")
    redemption_expiry_days: int = Field(default=30, ge=1, le=36500)

    # Ledger concurrency
    ledger_conflict_max_attempts: int = Field(default=5, ge=1)
    ledger_conflict_backoff_seconds: float = 0.05
    compensation_max_attempts: int = Field(default=5, ge=1)

    # Tracing (OTLP endpoint and headers come from the standard OTEL_* variables)
    tracing_enabled: bool = True
    tracing_console_export: bool = False

    # Loyalty automation scheduler
    loyalty_job_scheduler_enabled: bool = False
    loyalty_job_schedule_path: str = "config/schedules.toml"
    expiry_sweep_batch_size: int = 200
    orphaned_spend_grace_seconds: int = 15 * 60


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
