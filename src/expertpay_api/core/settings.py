from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./expertpay.db"
    api_key: str = ""

    # Stripe configuration
    stripe_secret_key: str = ""

    # PayPal configuration
    paypal_client_id: str = ""
    paypal_secret: str = ""
    paypal_sandbox: bool = True
    paypal_brand_name: str = "Expert Chat System"

    # Application URLs
    app_url: str = "http://localhost:8000"

    # Processor call policy
    processor_timeout_seconds: float = 15.0
    processor_max_attempts: int = 3
    processor_initial_backoff_seconds: float = 0.5
    processor_max_backoff_seconds: float = 8.0

    # Loyalty / disputes
    dispute_window_days: int = 30
    ledger_max_cas_attempts: int = 5

    # Create tables on startup (development and single-node deployments)
    auto_create_tables: bool = True
    log_level: str = "INFO"

    # Email / notification settings
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    smtp_sender_email: str | None = None


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
