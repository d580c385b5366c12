"""Orderflow: checkout sessions, orders, inventory and payment confirmation."""

__version__ = "0.1.0"
