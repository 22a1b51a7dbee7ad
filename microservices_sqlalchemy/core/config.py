"""Application configuration using Pydantic Settings.

Configuration is loaded from environment variables. Optionally, point
`ENV_FILE` at a local env file for development.
"""

import os
from enum import Enum

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppEnvironment(str, Enum):
    """Application environment values."""

    LOCAL = "local"
    TEST = "test"
    PROD = "prod"

    @property
    def is_development(self) -> bool:
        return self is AppEnvironment.LOCAL


class Settings(BaseSettings):
    """
    Application settings with type validation.

    The database settings mirror the options accepted by
    `DbContextInitializer`; explicit initializer arguments win over them.
    """

    model_config = SettingsConfigDict(
        env_file=os.getenv("ENV_FILE") or None, env_prefix="", extra="ignore"
    )

    # Application
    app_env: AppEnvironment = AppEnvironment.LOCAL
    app_name: str = "microservices-sqlalchemy"
    app_log_level: str = "INFO"

    # Observability
    observability_enabled: bool = True
    observability_structured_logs: bool = True
    observability_request_id_header: str = "X-Request-ID"

    # OpenTelemetry
    otel_enabled: bool = False
    otel_service_name: str = "microservices-sqlalchemy"
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"

    # Database
    database_url: str
    apply_migrations: bool = False
    enable_health_checks: bool = True

    # Connection pool (ignored for SQLite)
    db_pool_size: int = 20
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_pool_recycle: int = 3600

    # Retry-on-failure policy
    db_max_retry_count: int = 6
    db_max_retry_delay: float = 30.0

    # Alembic
    alembic_config: str = "alembic.ini"
    alembic_script_location: str | None = None

    @field_validator("app_env", mode="before")
    @classmethod
    def validate_app_env(cls, v: str | AppEnvironment) -> AppEnvironment:
        """Validate and parse app_env to AppEnvironment enum."""
        if isinstance(v, AppEnvironment):
            return v
        try:
            return AppEnvironment(v.lower())
        except ValueError:
            raise ValueError(
                f"app_env must be one of {[e.value for e in AppEnvironment]}, got '{v}'"
            )

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("database_url must be set")
        return v.strip()

    @field_validator("db_max_retry_count")
    @classmethod
    def validate_retry_count(cls, v: int) -> int:
        if v < 0:
            raise ValueError("db_max_retry_count must not be negative")
        return v

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Reject configurations that must never reach production."""
        if self.app_env == AppEnvironment.PROD and self.database_url.startswith("sqlite"):
            raise ValueError("DATABASE_URL must not point at SQLite in production")
        return self

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


def get_settings() -> Settings:
    """Load settings from the environment."""
    return Settings()
