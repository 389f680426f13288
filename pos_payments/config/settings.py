"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Pesapal Configuration
    pesapal_consumer_key: str = Field(..., description="Pesapal consumer key")
    pesapal_consumer_secret: str = Field(..., description="Pesapal consumer secret")
    pesapal_api_url: str = Field(
        default="https://pay.pesapal.com/v3", description="Pesapal API base URL"
    )
    pesapal_ipn_id: str = Field(
        default="", description="Registered IPN notification id sent with each order"
    )
    pesapal_ipn_url: str = Field(
        default="", description="Public URL of the IPN webhook endpoint"
    )
    pesapal_callback_url: str = Field(
        default="http://localhost:3000/payment/callback",
        description="Customer redirect URL after checkout",
    )
    gateway_timeout_seconds: float = Field(
        default=10.0, description="Timeout for every gateway HTTP call (seconds)"
    )
    gateway_success_code: str = Field(
        default="1", description="Gateway payment_status_code meaning 'completed'"
    )
    gateway_circuit_failure_threshold: int = Field(
        default=5, description="Consecutive gateway failures before the circuit opens"
    )
    gateway_circuit_timeout_seconds: int = Field(
        default=60, description="Seconds before an open circuit is half-opened"
    )

    # Database Configuration
    database_url: str = Field(..., description="Async SQLAlchemy connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="pos-payments", description="Application name")
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

    # Payment Initiation
    default_currency: str = Field(default="UGX", description="Currency used when none is given")
    reference_prefix: str = Field(default="ORD", description="Prefix of merchant reference numbers")

    # Background sweeps
    order_sync_interval_seconds: float = Field(
        default=60.0, description="Interval between order sync repair sweeps (seconds)"
    )
    order_sync_batch_size: int = Field(
        default=100, description="Max unsynced orders repaired per sweep"
    )
    order_sync_max_attempts: int = Field(
        default=3, description="Attempts per order before a repair is deferred"
    )
    pending_sweep_interval_seconds: float = Field(
        default=120.0, description="Interval between stale pending payment sweeps (seconds)"
    )
    pending_sweep_min_age_seconds: int = Field(
        default=300, description="Minimum age of a pending payment before it is re-polled"
    )
    pending_sweep_batch_size: int = Field(
        default=50, description="Max pending payments re-polled per sweep"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("pesapal_api_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalise the gateway base URL."""
        return v.rstrip("/")

    @field_validator("default_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        if len(v) != 3:
            raise ValueError("Currency must be 3-letter code")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sandbox(self) -> bool:
        """Check if pointed at the Pesapal sandbox."""
        return "cybqa" in self.pesapal_api_url or "sandbox" in self.pesapal_api_url


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
