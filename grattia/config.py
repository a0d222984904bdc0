"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from decimal import Decimal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 10
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = True

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Grattia API"
    api_version: str = "0.1.0"
    api_description: str = "Employee recognition, points and rewards"

    # Comma-separated list; "*" allows any origin
    cors_origins: str = "*"

    # Authentication - HS256 bearer tokens issued by the identity provider
    auth_jwt_secret: str = ""
    auth_jwt_audience: str | None = "authenticated"
    auth_jwt_algorithm: str = "HS256"

    # Shared secret for the scheduler that triggers batch jobs
    scheduler_secret: str = ""

    @property
    def allowed_origins(self) -> list[str]:
        """Get list of allowed CORS origins."""
        origins = []
        for origin in self.cors_origins.split(","):
            origin = origin.strip()
            if origin and origin not in origins:
                origins.append(origin)
        return origins

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "grattia-api"
    trace_sample_rate: float = 1.0

    # Payment Provider - Stripe (one key per company environment)
    stripe_secret_key_test: str = ""  # sk_test_...
    stripe_secret_key_live: str = ""  # sk_live_...
    stripe_seat_price_minor: int = 299  # $2.99 per member per month
    stripe_currency: str = "usd"
    stripe_fee_percent: Decimal = Decimal("0.029")
    stripe_fee_fixed_minor: int = 30

    # Points purchase
    default_point_exchange_rate: Decimal = Decimal("0.01")  # dollars per point

    # Catalog Providers
    goody_api_key: str = ""
    goody_api_url: str = "https://api.ongoody.com/v1"
    rye_api_key: str = ""
    rye_shopper_ip: str = ""
    rye_graphql_url: str = "https://staging.graphql.api.rye.com/v1/query"
    catalog_http_timeout: float = 15.0


    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if not self.auth_jwt_secret:
            errors.append("AUTH_JWT_SECRET is required but empty or missing")

        if self.stripe_seat_price_minor <= 0:
            errors.append("STRIPE_SEAT_PRICE_MINOR must be positive")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    def stripe_key_for(self, environment: str) -> str:
        """Get the Stripe secret key for a company environment ("test" or "live")."""
        if environment == "test":
            return self.stripe_secret_key_test
        return self.stripe_secret_key_live


# Global settings instance - validates at import time
settings = Settings()
