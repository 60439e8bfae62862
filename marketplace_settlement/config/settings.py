"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    stripe_webhook_tolerance_seconds: int = Field(
        default=300, description="Maximum age of a signed webhook timestamp"
    )
    stripe_request_timeout_seconds: float = Field(
        default=15.0, description="Upper bound for a single Stripe API call"
    )
    stripe_retry_max_attempts: int = Field(
        default=3, description="Attempts for transient Stripe errors"
    )

    # Checkout
    currency: str = Field(default="eur", description="Settlement currency (single currency)")
    checkout_success_url: str = Field(
        default="http://localhost:3000/checkout/success?session_id={CHECKOUT_SESSION_ID}",
        description="Redirect after a successful checkout",
    )
    checkout_cancel_url: str = Field(
        default="http://localhost:3000/checkout/cancel",
        description="Redirect after an abandoned checkout",
    )
    affiliate_clearing_days: int = Field(
        default=7, description="Days before an affiliate commission becomes available"
    )

    # Database Configuration
    database_url: str = Field(..., description="Database URL (postgresql+asyncpg://...)")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis / locking
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    lock_backend: str = Field(default="memory", description="Per-seller lock backend (memory/redis)")
    lock_ttl_seconds: int = Field(default=30, description="Lock expiry for the redis backend")
    lock_acquire_timeout_seconds: float = Field(
        default=10.0, description="Maximum wait to enter a per-seller critical section"
    )

    # Payouts
    payout_min_free_amount: int = Field(
        default=5000, description="Payouts at or above this amount (minor units) are free"
    )
    payout_fee_mode: str = Field(default="flat", description="Fee below the free threshold (flat/percent)")
    payout_small_fee: int = Field(default=100, description="Flat payout fee in minor units")
    payout_small_fee_percent: float = Field(
        default=2.0, description="Percentage payout fee when payout_fee_mode=percent"
    )
    payout_min_net_amount: int = Field(
        default=500, description="Smallest net amount a payout may send"
    )
    payout_min_balance: Optional[int] = Field(
        default=None, description="Available balance required before any payout"
    )
    payout_processing_days: int = Field(default=3, description="Displayed processing time")
    payout_dispatch_mode: str = Field(
        default="immediate", description="immediate: disburse on request, scheduled: worker"
    )
    payout_hold_seconds: int = Field(
        default=3600, description="Age a pending payout must reach before the worker disburses it"
    )
    payout_dispatch_interval_seconds: float = Field(default=60.0, description="Worker poll interval")
    payout_dispatch_batch_size: int = Field(default=50, description="Payouts per worker batch")
    payout_retry_after_seconds: int = Field(
        default=300,
        description="Age an unconfirmed processing payout must reach before the worker re-sends it",
    )

    # Application Configuration
    app_name: str = Field(default="marketplace-settlement", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Security
    api_key_header: str = Field(default="X-API-Key", description="API key header name")
    admin_api_key: Optional[str] = Field(
        default=None, description="Key required on admin routes (disabled when unset)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that Stripe secret key is a test or live key."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("payout_fee_mode")
    @classmethod
    def validate_payout_fee_mode(cls, v: str) -> str:
        if v.lower() not in ("flat", "percent"):
            raise ValueError("payout_fee_mode must be 'flat' or 'percent'")
        return v.lower()

    @field_validator("payout_dispatch_mode")
    @classmethod
    def validate_payout_dispatch_mode(cls, v: str) -> str:
        if v.lower() not in ("immediate", "scheduled"):
            raise ValueError("payout_dispatch_mode must be 'immediate' or 'scheduled'")
        return v.lower()

    @field_validator("lock_backend")
    @classmethod
    def validate_lock_backend(cls, v: str) -> str:
        if v.lower() not in ("memory", "redis"):
            raise ValueError("lock_backend must be 'memory' or 'redis'")
        return v.lower()

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if len(v) != 3:
            raise ValueError("Currency must be 3-letter code")
        return v.lower()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
