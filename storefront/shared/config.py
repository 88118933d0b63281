"""
config.py - Application Settings

PURPOSE:
    Single Settings object for the storefront engine. Every value defaults from
    an environment variable so the same image runs in docker-compose, CI and
    local development without code changes.

GROUPS:
    - Database: DATABASE_URL, or the POSTGRES_* parts it is assembled from
    - Redis: checkout session storage (REDIS_HOST/PORT/DB)
    - Kafka: outbox relay target (KAFKA_BOOTSTRAP_SERVERS, KAFKA_ENABLED)
    - Checkout: session TTL and sweep interval
    - Payment provider: server key used for signatures, API base URL
    - Inventory: low stock alert threshold

USAGE:
    from storefront.shared.config import settings
    settings.checkout_session_ttl_seconds
"""

import os
from typing import Optional

from pydantic_settings import BaseSettings  # Configuration management


class Settings(BaseSettings):
    """Application settings."""

    service_name: str = os.getenv("SERVICE_NAME", "storefront-engine")
    service_port: int = int(os.getenv("SERVICE_PORT", "8000"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Database
    database_url_override: Optional[str] = os.getenv("DATABASE_URL")
    postgres_user: str = os.getenv("POSTGRES_USER", "postgres")
    postgres_password: str = os.getenv("POSTGRES_PASSWORD", "postgres")
    postgres_host: str = os.getenv("POSTGRES_HOST", "localhost")
    postgres_port: str = os.getenv("POSTGRES_PORT", "5432")
    postgres_db: str = os.getenv("POSTGRES_DB", "storefront")

    # Redis (checkout sessions)
    session_store_backend: str = os.getenv("SESSION_STORE_BACKEND", "redis")  # redis | memory
    redis_host: str = os.getenv("REDIS_HOST", "localhost")
    redis_port: int = int(os.getenv("REDIS_PORT", "6379"))
    redis_db: int = int(os.getenv("REDIS_DB", "0"))

    # Kafka (outbox relay)
    kafka_enabled: bool = os.getenv("KAFKA_ENABLED", "true").lower() == "true"
    kafka_bootstrap_servers: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
    outbox_poll_interval_seconds: int = int(os.getenv("OUTBOX_POLL_INTERVAL_SECONDS", "2"))

    # Checkout sessions
    checkout_session_ttl_seconds: int = int(os.getenv("CHECKOUT_SESSION_TTL_SECONDS", "3600"))
    session_sweep_interval_seconds: int = int(os.getenv("SESSION_SWEEP_INTERVAL_SECONDS", "300"))

    # Payment provider
    payment_provider_name: str = os.getenv("PAYMENT_PROVIDER_NAME", "midtrans")
    payment_provider_server_key: str = os.getenv("PAYMENT_PROVIDER_SERVER_KEY", "dev-server-key")
    payment_provider_url: str = os.getenv(
        "PAYMENT_PROVIDER_URL", "https://app.sandbox.midtrans.com/snap/v1/transactions"
    )
    payment_provider_timeout_seconds: int = int(os.getenv("PAYMENT_PROVIDER_TIMEOUT_SECONDS", "10"))
    payment_provider_production: bool = os.getenv("PAYMENT_PROVIDER_PRODUCTION", "false").lower() == "true"
    app_base_url: str = os.getenv("APP_BASE_URL", "http://localhost:3000")
    enforce_notification_ordering: bool = os.getenv("ENFORCE_NOTIFICATION_ORDERING", "true").lower() == "true"

    # Inventory
    low_stock_threshold: int = int(os.getenv("LOW_STOCK_THRESHOLD", "10"))
    seed_catalog: bool = os.getenv("SEED_CATALOG", "false").lower() == "true"

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}@"
            f"{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )


settings = Settings()
