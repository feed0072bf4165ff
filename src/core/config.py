"""Application configuration via Pydantic settings."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration object loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    app_name: str = "Hospital Care API"
    debug: bool = False

    database_url: str = Field("sqlite+aiosqlite:///./hospital.db", alias="DATABASE_URL")
    jwt_secret: str = Field("change-me", alias="JWT_SECRET")
    jwt_algorithm: str = "HS256"
    jwt_expires_in_minutes: int = Field(60 * 24, alias="JWT_EXPIRES_IN")

    default_timezone: str = Field("UTC", alias="DEFAULT_TIMEZONE")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_format: str = Field("console", alias="LOG_FORMAT")

    checkin_api_base: str = Field("http://localhost:8081", alias="CHECKIN_API_BASE")
    checkin_timeout_seconds: float = Field(5.0, alias="CHECKIN_TIMEOUT_SECONDS")
    payment_api_base: str = Field("http://localhost:8082", alias="PAYMENT_API_BASE")
    payment_timeout_seconds: float = Field(10.0, alias="PAYMENT_TIMEOUT_SECONDS")
    payment_supports_idempotency: bool = Field(True, alias="PAYMENT_SUPPORTS_IDEMPOTENCY")
    payment_reconcile_window_minutes: int = Field(15, alias="PAYMENT_RECONCILE_WINDOW_MINUTES")
    notify_api_base: str | None = Field(None, alias="NOTIFY_API_BASE")
    notify_timeout_seconds: float = Field(2.0, alias="NOTIFY_TIMEOUT_SECONDS")

    saga_lease_seconds: int = Field(60, alias="SAGA_LEASE_SECONDS")
    conflict_retry_attempts: int = Field(3, alias="CONFLICT_RETRY_ATTEMPTS")


@lru_cache(1)
def get_settings() -> Settings:
    """Return a cached settings instance."""
    return Settings()


settings = get_settings()
