"""
Application Settings for Prompt Generator SaaS

Centralized configuration using Pydantic Settings with .env support.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Billing settings control how Stripe prices map onto plans:
    - STRIPE_PRICE_ID_PREMIUM / STRIPE_PRICE_ID_PRO: price refs of paid plans
    - STRICT_PRICE_MAPPING: reject unknown price refs instead of
      falling back to the free plan
    """

    # Application Settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    frontend_url: str = "http://localhost:5173"
    allowed_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]

    # Auth Configuration (tokens are issued by the identity service)
    jwt_secret: Optional[str] = None
    jwt_algorithm: str = "HS256"
    jwt_audience: Optional[str] = None

    # Stripe Configuration
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_price_id_premium: str = "price_premium_monthly"
    stripe_price_id_pro: str = "price_pro_monthly"
    stripe_timeout_seconds: float = 10.0
    strict_price_mapping: bool = False

    # Retry Configuration (concurrent subscription writes)
    max_retries: int = 3

    # Expiry Sweep
    expiry_sweep_enabled: bool = True
    sweep_interval_hours: int = 24
    sweep_batch_size: int = 200

    # Database Configuration (SQLModel/SQLAlchemy)
    database_url: Optional[str] = None
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_echo: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_billing(self) -> "Settings":
        """Validate billing-related values."""
        if self.max_retries < 1:
            raise ValueError("MAX_RETRIES must be at least 1")

        if self.sweep_batch_size < 1:
            raise ValueError("SWEEP_BATCH_SIZE must be at least 1")

        if self.stripe_price_id_premium == self.stripe_price_id_pro:
            raise ValueError(
                "STRIPE_PRICE_ID_PREMIUM and STRIPE_PRICE_ID_PRO must differ"
            )

        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export for direct import
settings = get_settings()
