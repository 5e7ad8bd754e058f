"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
For nested settings, use double underscore: BILLING__GATEWAY_TIMEOUT_SECONDS=20
"""

from enum import Enum

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    app_name: str = Field("subledger", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    testing: bool = Field(False, description="Testing mode")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str = Field(
            "sqlite+aiosqlite:///./subledger.db", description="SQLAlchemy async database URL"
        )
        pool_pre_ping: bool = Field(True, description="Test connections before use")
        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Celery & Scheduling
    # ============================================================

    class CelerySettings(BaseModel):
        """Celery configuration for the renewal and issue-detection schedules."""

        broker_url: str = Field("redis://localhost:6379/0", description="Broker URL")
        result_backend: str = Field("redis://localhost:6379/1", description="Result backend")
        timezone: str = Field("UTC", description="Timezone")
        renewal_hour_utc: int = Field(0, ge=0, le=23, description="Hour of the daily renewal run")
        issue_detection_interval_seconds: float = Field(
            3600.0, gt=0, description="Interval between billing issue detection runs"
        )
        task_soft_time_limit: int = Field(1800, description="Soft time limit")
        task_time_limit: int = Field(2400, description="Hard time limit")

    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability & Monitoring
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Observability configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")
        enable_correlation_ids: bool = Field(True, description="Merge contextvars into log events")
        enable_metrics: bool = Field(True, description="Enable metrics collection")
        otel_service_name: str = Field("subledger", description="Service name")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Billing Configuration
    # ============================================================

    class BillingSettings(BaseModel):
        """Billing engine configuration."""

        default_currency: str = Field("USD", description="Default currency code")
        default_locale: str = Field("en_US", description="Locale for money formatting")

        # Discounts
        discount_code_percentage: int = Field(
            10, ge=0, le=100, description="Percentage taken off by a discount code"
        )

        # Renewal processing
        gateway_factory: str | None = Field(
            None,
            description="Import path 'package.module:callable' returning the PaymentGateway",
        )
        gateway_timeout_seconds: float = Field(
            30.0, gt=0, description="Timeout for a single gateway charge call"
        )
        renewal_concurrency: int = Field(
            8, ge=1, description="Maximum subscriptions renewed concurrently in one batch"
        )
        retry_backoff_hours: list[int] = Field(
            default_factory=lambda: [24],
            description="Hours to wait before each retry; the last value repeats",
        )
        max_retry_attempts: int = Field(
            4, ge=1, description="Failed attempts in one period before the subscription is unpaid"
        )
        conflict_retry_attempts: int = Field(
            3, ge=1, description="Attempts for a write that loses an optimistic-concurrency race"
        )

        # Issue detection
        card_expiry_lookahead_days: int = Field(
            7, ge=0, description="Days ahead to look for expiring payment methods"
        )

        # Analytics
        customer_lifetime_months: int = Field(
            24, ge=1, description="Assumed average customer lifetime for CLV"
        )
        forecast_months: int = Field(3, ge=1, description="Months of revenue forecast to project")

        @field_validator("retry_backoff_hours")
        @classmethod
        def validate_backoff(cls, v: list[int]) -> list[int]:
            """Require at least one positive delay."""
            if not v or any(hours <= 0 for hours in v):
                raise ValueError("retry_backoff_hours must contain positive hour values")
            return v

    billing: BillingSettings = BillingSettings()  # type: ignore[call-arg]

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: str | Environment) -> Environment:
        """Validate environment."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.testing or self.environment == Environment.TEST


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore[call-arg]
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None
