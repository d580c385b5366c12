"""Tests for settings and logging setup."""

import logging

import structlog

from orderflow.infrastructure.config import Settings
from orderflow.infrastructure.logging_config import configure_logging


def test_defaults() -> None:
    """Defaults apply when nothing is configured."""
    settings = Settings(_env_file=None)

    assert settings.low_stock_threshold == 10
    assert settings.checkout_session_ttl_minutes == 60
    assert settings.order_number_prefix == "ORD"
    assert settings.sweep_interval_seconds == 60.0


def test_environment_override(monkeypatch) -> None:
    """ORDERFLOW_ prefixed variables override defaults."""
    monkeypatch.setenv("ORDERFLOW_LOW_STOCK_THRESHOLD", "3")
    monkeypatch.setenv("ORDERFLOW_LOG_JSON", "false")
    monkeypatch.setenv("ORDERFLOW_CART_SERVICE_URL", "http://cart.local")

    settings = Settings(_env_file=None)

    assert settings.low_stock_threshold == 3
    assert settings.log_json is False
    assert settings.cart_service_url == "http://cart.local"


def test_configure_logging_console(caplog) -> None:
    """Console rendering can replace JSON output."""
    configure_logging("DEBUG", json=False)
    caplog.set_level(logging.INFO)

    structlog.get_logger("orderflow.test").info("hello", answer=42)

    assert any("answer=42" in message for message in caplog.messages)
