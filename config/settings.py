"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Payment gateway (Razorpay)
    razorpay_key_id: str = Field(default="", description="Razorpay API key id (rzp_test_...)")
    razorpay_key_secret: str = Field(default="", description="Razorpay API key secret")
    razorpay_webhook_secret: str = Field(default="", description="Razorpay webhook signing secret")
    razorpay_api_base_url: str = Field(
        default="https://api.razorpay.com/v1", description="Razorpay REST API base URL"
    )
    gateway_timeout_seconds: float = Field(
        default=10.0, description="Timeout for gateway API calls (seconds)"
    )
    currency: str = Field(default="INR", description="Checkout currency code")

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL (async driver)")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_pool_timeout: int = Field(
        default=10, description="Seconds to wait for a pooled connection"
    )
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")

    # Webhook idempotency
    idempotency_backend: str = Field(
        default="memory", description="Processed-event store backend (memory/redis)"
    )
    idempotency_ttl_seconds: int = Field(
        default=86400, description="How long a processed event id is remembered (seconds)"
    )
    idempotency_sweep_interval_seconds: int = Field(
        default=3600, description="Interval between expiry sweeps of the in-memory store"
    )

    # Notifications
    resend_api_key: str = Field(default="", description="Resend API key for transactional email")
    email_from: str = Field(
        default="Desi Prompts <noreply@desiprompts.in>", description="Sender address"
    )
    notification_timeout_seconds: float = Field(
        default=5.0, description="Upper bound for sending an order confirmation (seconds)"
    )
    download_url_ttl_seconds: int = Field(
        default=1800, description="Lifetime of signed PDF download URLs (seconds)"
    )

    # Object storage
    s3_bucket_name: str = Field(default="", description="Bucket holding the PDF packs")
    aws_region: str = Field(default="eu-north-1", description="AWS region of the bucket")

    # Application Configuration
    app_name: str = Field(default="promptpack-commerce", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=5000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:5173,http://localhost:5174",
        description="CORS allowed origins (comma-separated)"
    )

    # Security
    api_key_header: str = Field(default="X-API-Key", description="API key header name")
    admin_api_key: str = Field(default="", description="API key for admin endpoints")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("razorpay_key_id")
    @classmethod
    def validate_razorpay_key(cls, v: str) -> str:
        """Validate that a configured Razorpay key id is a test or live key."""
        if v and not v.startswith("rzp_test_") and not v.startswith("rzp_live_"):
            raise ValueError(
                "Invalid Razorpay key id format. Must start with 'rzp_test_' or 'rzp_live_'"
            )
        return v

    @field_validator("idempotency_backend")
    @classmethod
    def validate_idempotency_backend(cls, v: str) -> str:
        """Validate idempotency backend."""
        valid_backends = ["memory", "redis"]
        if v.lower() not in valid_backends:
            raise ValueError(f"Invalid idempotency backend. Must be one of: {valid_backends}")
        return v.lower()

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

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Razorpay test keys."""
        return not self.razorpay_key_id.startswith("rzp_live_")

    @property
    def gateway_configured(self) -> bool:
        """Check if gateway API credentials are present."""
        return bool(self.razorpay_key_id and self.razorpay_key_secret)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
