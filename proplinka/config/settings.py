"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import Dict, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_publishable_key: str = Field(default="", description="Stripe publishable key (pk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    stripe_breaker_failure_threshold: int = Field(
        default=5, description="Consecutive Stripe failures before calls fail fast"
    )
    stripe_breaker_reset_seconds: float = Field(
        default=60.0, description="Seconds before a tripped Stripe circuit is retried"
    )
    stripe_price_featured_7: str = Field(default="", description="Stripe price ID for the 7 day featured plan")
    stripe_price_featured_30: str = Field(default="", description="Stripe price ID for the 30 day featured plan")
    stripe_price_premium_30: str = Field(default="", description="Stripe price ID for the 30 day premium plan")

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL (postgresql+asyncpg://...)")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(..., description="Redis connection URL")
    webhook_dedup_ttl: int = Field(
        default=86400 * 7, description="How long processed webhook IDs are remembered (seconds)"
    )

    # Application Configuration
    app_name: str = Field(default="proplinka", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="json, or console for local development")
    debug: bool = Field(default=False, description="Debug mode")
    site_url: str = Field(
        default="http://localhost:3000", description="Public site URL used for checkout redirects"
    )

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Auth
    auth_jwt_secret: str = Field(..., description="Secret used to verify auth provider access tokens")
    auth_jwt_audience: str = Field(default="authenticated", description="Expected token audience")
    auth_jwt_algorithm: str = Field(default="HS256", description="Access token signing algorithm")
    cron_secret: str = Field(default="", description="Bearer secret for scheduled job endpoints")

    # Email
    resend_api_key: str = Field(default="", description="Resend API key (email disabled when empty)")
    resend_api_base: str = Field(default="https://api.resend.com", description="Resend API base URL")
    email_from: str = Field(default="noreply@proplinka.com", description="Sender address")
    email_timeout_seconds: float = Field(default=10.0, description="Email API request timeout")

    # Media
    media_root: str = Field(default="./media", description="Directory for uploaded property images")
    media_url: str = Field(default="/media", description="Public URL prefix for uploaded images")

    # Scheduled jobs
    remittance_due_days: int = Field(
        default=30, description="Days after creation before a referral fee is due"
    )
    listing_expiry_interval_minutes: int = Field(
        default=60, description="Interval of the featured listing expiry worker"
    )
    pending_payment_max_age_hours: int = Field(
        default=24, description="Age after which pending checkouts are reconciled against Stripe"
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
        """Validate that Stripe secret key is a test or live secret key."""
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

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def get_featured_price_ids(self) -> Dict[str, str]:
        """Stripe price IDs keyed by featured listing plan."""
        return {
            "featured_7": self.stripe_price_featured_7,
            "featured_30": self.stripe_price_featured_30,
            "premium_30": self.stripe_price_premium_30,
        }

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")

    @property
    def email_enabled(self) -> bool:
        return bool(self.resend_api_key)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
