"""Application configuration via pydantic-settings."""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "ConsultPay"
    app_version: str = "1.0.0"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    api_prefix: str = "/api/v1"
    frontend_url: str = "http://localhost:3000"
    public_api_url: str = "http://localhost:8000"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    workers: int = 4

    # Database
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "consultpay"
    postgres_password: str = Field(default="consultpay_secret")
    postgres_db: str = "consultpay"
    db_pool_size: int = 20
    db_max_overflow: int = 10

    @computed_field
    @property
    def database_url(self) -> str:
        """Async PostgreSQL connection URL."""
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @computed_field
    @property
    def sync_database_url(self) -> str:
        """Sync PostgreSQL connection URL for Alembic."""
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Redis
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0

    @computed_field
    @property
    def redis_url(self) -> str:
        """Redis connection URL."""
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # JWT Authentication (tokens are issued elsewhere, only verified here)
    jwt_secret_key: str = Field(default="your-super-secret-key-change-in-production")
    jwt_algorithm: str = "HS256"

    # Cron triggers
    cron_secret: str = Field(default="change-me-cron-secret")

    # Encryption (bank account numbers)
    encryption_key: str = Field(default="your-32-byte-encryption-key-here")

    # Cashfree payment gateway
    cashfree_app_id: Optional[str] = None
    cashfree_secret_key: Optional[str] = None
    cashfree_base_url: str = "https://sandbox.cashfree.com/pg"
    cashfree_checkout_url: str = "https://payments.cashfree.com/pay/order"
    cashfree_api_version: str = "2023-08-01"

    # Cashfree payouts (transfers)
    cashfree_payout_client_id: Optional[str] = None
    cashfree_payout_client_secret: Optional[str] = None
    cashfree_payout_base_url: str = "https://payout-gamma.cashfree.com"
    cashfree_payout_webhook_secret: Optional[str] = None

    # PayPal
    paypal_client_id: Optional[str] = None
    paypal_client_secret: Optional[str] = None
    paypal_base_url: str = "https://api-m.sandbox.paypal.com"
    paypal_webhook_id: Optional[str] = None

    # Stripe
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    gateway_timeout_seconds: float = 15.0

    # SMS (Twilio)
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_from_number: Optional[str] = None

    # Email (SendGrid)
    sendgrid_api_key: Optional[str] = None
    email_from_address: str = "noreply@consultpay.in"
    email_from_name: str = "ConsultPay"

    # Rate Limiting
    rate_limit_per_minute: int = 100
    rate_limit_money_per_minute: int = 20

    # CORS
    cors_origins: List[str] = ["http://localhost:3000"]

    # Money
    currency: str = "INR"
    platform_commission_rate: Decimal = Decimal("0.15")

    # Bookings and sessions
    payment_lead_time_minutes: int = 60
    completion_code_ttl_minutes: int = 30
    session_auto_complete_grace_minutes: int = 60
    dispute_window_hours: int = 24
    auto_refund_late_payments: bool = True

    # Payouts (amounts in paise)
    payout_minimum_amount: int = 100000  # 1,000 INR
    payout_maximum_amount: int = 10000000  # 100,000 INR
    payout_max_transaction_fee: int = 10000  # 100 INR
    payout_auto_release_on_failure: bool = True

    # Bank account penny test (amounts in paise)
    penny_test_min_amount: int = 100
    penny_test_max_amount: int = 999
    penny_test_max_attempts: int = 3


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
