"""Application configuration using pydantic-settings.

All environment variables should be accessed through the settings object
rather than using os.getenv() directly. Platform credentials and webhook
signing secrets are read once at startup and handed to the delivery services
as constructor arguments.
"""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars
    )

    # Deployment environment; dev/test-only endpoints are disabled in production
    environment: Literal["development", "test", "production"] = "development"

    # Database
    database_url: str = "sqlite:///./data/delivery_gateway.db"

    # Security (admin endpoints accept HS256 bearer tokens)
    secret_key: str = "change-me-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    operator_roles: str = "owner,admin,manager"

    # CORS - comma-separated origins
    cors_origins: str = "http://localhost:3000,http://localhost:8000"

    # ==========================================================================
    # Uber Eats
    # ==========================================================================
    ubereats_client_id: str = ""
    ubereats_client_secret: str = ""
    ubereats_scope: str = "eats.store eats.order eats.store.status.write"
    ubereats_auth_url: str = "https://auth.uber.com/oauth/v2/token"
    ubereats_api_base: str = "https://api.uber.com"
    ubereats_webhook_secret: str = ""
    ubereats_webhook_secret_secondary: str = ""

    # ==========================================================================
    # Foodpanda
    # ==========================================================================
    foodpanda_username: str = ""
    foodpanda_password: str = ""
    foodpanda_base_url: str = "https://integration-middleware.as.restaurant-partners.com"
    foodpanda_chain_code: str = ""
    foodpanda_callback_url: str = ""

    # ==========================================================================
    # Webhook replay protection
    # ==========================================================================
    webhook_max_skew_seconds: int = 300
    webhook_require_timestamp: bool = False
    webhook_dedup_capacity: int = 10000
    webhook_dedup_ttl_seconds: int = 3600

    # ==========================================================================
    # Outbound calls
    # ==========================================================================
    token_refresh_margin_seconds: int = 300  # refresh 5 minutes before expiry
    platform_request_timeout: float = 30.0

    # Server
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # API
    api_v1_prefix: str = "/api/v1"

    # Rate limiting
    rate_limit_enabled: bool = True
    webhook_rate_limit: str = "300/minute"

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Fail fast on insecure production configuration, warn otherwise."""
        import warnings

        if self.is_production:
            if self.secret_key == "change-me-in-production" or len(self.secret_key) < 32:
                raise ValueError(
                    "FATAL: Cannot start in production mode without a SECRET_KEY of "
                    "at least 32 characters."
                )
            if not self.ubereats_webhook_secret:
                warnings.warn(
                    "UBEREATS_WEBHOOK_SECRET is not set; Uber Eats webhooks will be "
                    "rejected with 500 until it is configured.",
                    UserWarning,
                    stacklevel=2,
                )
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def dev_endpoints_enabled(self) -> bool:
        return not self.is_production

    @property
    def cors_origins_list(self) -> List[str]:
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def operator_roles_set(self) -> set:
        return {r.strip().lower() for r in self.operator_roles.split(",") if r.strip()}

    @property
    def ubereats_webhook_secrets(self) -> List[Optional[str]]:
        """Primary then secondary signing secret; empty values become None."""
        return [
            self.ubereats_webhook_secret or None,
            self.ubereats_webhook_secret_secondary or None,
        ]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
