"""Application configuration loaded from environment variables."""

from decimal import Decimal
from functools import lru_cache
from typing import Dict, List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # App
    app_name: str = "Remitcore"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8000
    api_prefix: str = "/api/v1"

    # Security - MUST be set via environment variables (no defaults for production)
    secret_key: str = "dev-secret-key-CHANGE-IN-PRODUCTION"  # INSECURE default for dev only
    admin_api_token: str = ""  # Empty = admin auth disabled (DEV ONLY - set for production!)
    expose_otp_codes: bool = False  # Return OTP codes in API responses (local dev only)

    # CORS - comma-separated allowed origins for production
    allowed_origins: str = "http://localhost:3000,http://localhost:5173"

    # Database (SQLite for local dev, PostgreSQL for production)
    database_url: str = "sqlite+aiosqlite:///./remitcore.db"

    # Notifications gateway (empty = log only)
    notification_url: str = ""
    notification_timeout_seconds: float = 5.0

    # Transfer attempts
    attempt_ttl_seconds: int = 120
    fee_wallet_owner_id: str = "platform_fees"
    system_wallet_currencies: List[str] = ["USD", "HTG"]
    seed_sample_accounts: bool = False  # Load sample_data/accounts.json at startup (local dev)

    # Risk policy - amounts are in the sender's currency
    otp_amount_thresholds: Dict[str, Decimal] = {
        "USD": Decimal("500"),
        "HTG": Decimal("50000"),
    }
    block_amount_thresholds: Dict[str, Decimal] = {
        "USD": Decimal("5000"),
        "HTG": Decimal("650000"),
    }
    velocity_window_minutes: int = 10
    velocity_max_transfers: int = 3

    # Trust policy
    trust_trusted_min_transfers: int = 5
    trust_moderate_min_transfers: int = 1
    trust_established_account_days: int = 90
    trust_active_account_days: int = 30
    trust_active_recipient_min_transfers: int = 21
    trust_some_history_min_transfers: int = 6

    # OTP step-up
    otp_ttl_seconds: int = 300
    otp_max_attempts: int = 5
    otp_max_issues_per_attempt: int = 3
    otp_code_length: int = 6

    # FX rate locks
    fx_lock_ttl_seconds: int = 45
    fx_default_spread_bps: int = 150
    fx_static_mid_rates: Dict[str, Decimal] = {
        "USD/HTG": Decimal("132.50"),
    }

    # Fee schedule keyed by corridor code ({FROMROLE}_{TOROLE}); DEFAULT applies otherwise.
    # Percent values are percentages of the sent amount, flats are in the sender's currency.
    fee_schedule: Dict[str, Dict[str, Decimal]] = {
        "DEFAULT": {"platform_percent": Decimal("1.0")},
        "DIASPORA_CLIENT": {
            "platform_flat": Decimal("2.99"),
            "network_flat": Decimal("0.50"),
        },
        "DIASPORA_DISTRIBUTOR": {
            "platform_flat": Decimal("2.99"),
            "agent_percent": Decimal("0.5"),
            "network_flat": Decimal("0.50"),
        },
        "CLIENT_DISTRIBUTOR": {
            "platform_percent": Decimal("1.0"),
            "agent_percent": Decimal("0.5"),
        },
        "MERCHANT_MERCHANT": {},
    }

    # Recurring schedules
    scheduler_enabled: bool = True
    scheduler_interval_seconds: int = 300
    scheduler_max_concurrency: int = 8
    scheduler_batch_size: int = 200
    max_consecutive_failures: int = 3
    max_retries_per_day: int = 3
    retry_backoff_seconds: int = 3600
    run_claim_timeout_seconds: int = 600
    plan_schedule_limits: Dict[str, int] = {
        "free": 1,
        "plus": 5,
        "business": 25,
    }

    @property
    def cors_origins(self) -> list:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    class Config:
        env_prefix = "REMITCORE_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
