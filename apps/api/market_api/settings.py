"""Application settings and configuration."""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: Optional[str] = None
    postgres_user: str = "market"
    postgres_password: str = "market_dev_password"
    postgres_db: str = "market"
    postgres_port: int = 5432

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # API
    api_port: int = 8000
    secret_key: str = "dev-secret-key-change-in-production"
    environment: str = "development"
    api_host: str = "0.0.0.0"

    # Security
    jwt_secret_key: str = "dev-jwt-secret-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiration_hours: int = 24
    admin_api_token: str = "dev-admin-token-change-in-production"

    # Logging
    log_level: str = "INFO"

    # Fees (fractions of the total price)
    platform_fee_ratio: Decimal = Decimal("0.30")
    seller_revenue_ratio: Decimal = Decimal("0.70")
    min_price: Decimal = Decimal("0.1")
    max_price: Decimal = Decimal("10000")
    payment_unit_decimals: int = 6  # 1 XRP = 1,000,000 drops

    # Ledger
    ledger_rpc_url: str = "https://s.altnet.rippletest.net:51234"
    ledger_timeout_seconds: float = 10.0
    platform_address: str = "rPT1Sjq2YGrBMTttX4GZHjKu9dyfzbpAYe"
    platform_secret: Optional[str] = None  # Required outside development

    # Escrow windows
    escrow_finish_after_seconds: int = 60
    escrow_cancel_after_seconds: int = 3600

    # Ledger retry policy
    ledger_retry_attempts: int = 3
    ledger_retry_base_delay_seconds: float = 1.0
    ledger_retry_backoff_multiplier: float = 2.0
    ledger_retry_max_delay_seconds: float = 30.0
    confirmation_poll_attempts: int = 5
    confirmation_poll_interval_seconds: float = 2.0

    # Downloads
    download_token_ttl_hours: int = 24
    download_max_attempts: int = 3
    download_enforce_client_binding: bool = False
    download_base_path: str = "/v1/downloads"
    content_gateway_url: str = "https://ipfs.io/ipfs"

    # Reputation
    reward_base_amount: Decimal = Decimal("10")
    reward_first_submission_bonus: Decimal = Decimal("5")
    reward_currency: str = "REP"

    # CORS
    cors_origins: list[str] = ["*"]
    cors_allow_credentials: bool = True
    cors_allow_methods: list[str] = ["*"]
    cors_allow_headers: list[str] = ["*"]

    @property
    def database_url_computed(self) -> str:
        """Compute database URL if not explicitly set."""
        if self.database_url:
            return self.database_url
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@localhost:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() in ("development", "test", "dev")

    def validate_fee_split(self):
        """Validate the global fee split and price range.

        A misconfigured split is a startup error, never a per-call error.
        """
        for name in ("platform_fee_ratio", "seller_revenue_ratio"):
            ratio = getattr(self, name)
            if ratio < 0 or ratio > 1:
                raise ValueError(f"{name.upper()} must be between 0 and 1, got {ratio}")
        if self.platform_fee_ratio + self.seller_revenue_ratio != Decimal("1"):
            raise ValueError(
                "PLATFORM_FEE_RATIO and SELLER_REVENUE_RATIO must sum to 1.0, got "
                f"{self.platform_fee_ratio} + {self.seller_revenue_ratio}"
            )
        if self.min_price <= 0:
            raise ValueError("MIN_PRICE must be positive")
        if self.min_price > self.max_price:
            raise ValueError("MIN_PRICE must not exceed MAX_PRICE")
        if self.payment_unit_decimals < 0:
            raise ValueError("PAYMENT_UNIT_DECIMALS must not be negative")

    def validate_production_settings(self):
        """Validate settings for production environment."""
        if self.is_development:
            return
        if not self.platform_secret:
            raise ValueError(
                "PLATFORM_SECRET is required outside development. "
                "The platform signs escrow releases, payouts and credentials."
            )
        if self.jwt_secret_key.startswith("dev-"):
            raise ValueError("JWT_SECRET_KEY must be changed in production.")
        if self.admin_api_token.startswith("dev-"):
            raise ValueError("ADMIN_API_TOKEN must be changed in production.")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
