from decimal import Decimal
from functools import lru_cache
import json

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables (and .env)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Database (libpq DSN, e.g. "dbname=market user=market host=localhost")
    DATABASE_URL: str = "dbname=market user=market password=secret host=localhost port=5432"
    DB_CONNECT_TIMEOUT: int = 10  # seconds
    DB_STATEMENT_TIMEOUT_MS: int = 5000

    # App
    APP_NAME: str = "Marketplace Settlement API"
    APP_VERSION: str = "0.1.0"
    CORS_ORIGINS: list[str] = ["*"]

    # Logging
    LOG_LEVEL: str = "INFO"
    STRUCTURED_LOGS_ENABLED: bool = True

    # Settlement / withdrawal policy
    MINIMUM_WITHDRAWAL: Decimal = Decimal("20")
    DEFAULT_PLAN_ID: int = 1  # Free
    REQUIRE_APPROVED_AFFILIATE: bool = True
    DEFAULT_PAYMENT_METHOD: str = "stripe"

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
