"""Application configuration.

Loads settings from environment variables with sensible defaults.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    debug: bool = False

    # Database
    database_url: str = "postgresql+asyncpg://orderflow:orderflow_dev_password@db:5432/orderflow"

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Checkout sessions
    checkout_session_ttl_minutes: int = 60

    # Inventory
    reservation_ttl_minutes: int = 30
    low_stock_threshold: int = 10

    # Orders
    price_tolerance_cents: int = 1
    order_number_prefix: str = "ORD"
    order_number_max_attempts: int = 5
    auto_processing_after_hours: int = 24

    # Payment confirmation rules
    auto_confirm_max_amount_cents: int = 5000
    trusted_customer_min_score: int = 8

    # Collaborators
    cart_service_url: str = "http://cart:8001"
    payment_service_url: str = "http://payments:8002"
    notification_service_url: str = "http://notifications:8003"
    http_timeout_seconds: float = 10.0

    # Expiry sweeper
    sweep_interval_seconds: float = 60.0

    class Config:
        """Pydantic configuration."""

        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "ORDERFLOW_"


settings = Settings()
