"""Application configuration."""
from collections import Counter
from functools import lru_cache
import math

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # App
    app_name: str = "ApiTemplate"
    debug: bool = False
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite:///./data/apitemplate.db"

    # Access tokens
    secret_key: str
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 600
    jwt_issuer: str | None = None
    jwt_audience: str | None = None

    # Refresh tokens
    refresh_token_expire_days: int = 7
    max_active_refresh_tokens_per_user: int = 5
    refresh_token_retention_days: int = 30
    revoke_all_on_refresh_reuse: bool = True
    cleanup_on_startup: bool = True

    # Permission gate
    public_paths: list[str] = ["/health", "/docs", "/redoc", "/openapi.json", "/favicon.ico"]

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, value: str) -> str:
        """Fail closed if SECRET_KEY is weak or placeholder quality."""
        if not value:
            raise ValueError("SECRET_KEY must be set.")

        if len(value) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")

        weak_values = {"changeme", "changeme-in-production", "secret", "password", "test"}
        lowered = value.lower()
        if lowered in weak_values or "changeme" in lowered:
            raise ValueError("SECRET_KEY must not be a placeholder value.")

        counts = Counter(value)
        entropy_per_char = -sum((count / len(value)) * math.log2(count / len(value)) for count in counts.values())
        if entropy_per_char * len(value) < 100:
            raise ValueError("SECRET_KEY entropy is too low; use a cryptographically random value.")

        return value

    @field_validator(
        "access_token_expire_minutes",
        "refresh_token_expire_days",
        "max_active_refresh_tokens_per_user",
        "refresh_token_retention_days",
    )
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
