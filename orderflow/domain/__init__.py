"""Domain layer for orderflow.

Contains entities, value objects, state machines and domain exceptions.
This layer has no infrastructure dependencies.
"""

from orderflow.domain.entities import (
    CheckoutSession,
    ConfirmationHistoryEntry,
    ConfirmationType,
    HistoryEventType,
    HistoryPriority,
    HistorySource,
    InventoryAction,
    InventoryHistoryEntry,
    InventoryRecord,
    InventorySource,
    Order,
    OrderHistoryEntry,
    OrderItem,
    PaymentConfirmation,
    StockReservation,
)
from orderflow.domain.exceptions import DomainError, ErrorKind
from orderflow.domain.state_machines import (
    CheckoutSessionStatus,
    CheckoutStep,
    ConfirmationStatus,
    OrderPaymentStatus,
    OrderStatus,
    ReservationStatus,
    is_valid_step_progression,
)
from orderflow.domain.value_objects import Address, Money, PaymentMethod, ShippingMethod

__all__ = [
    # Entities
    "CheckoutSession",
    "ConfirmationHistoryEntry",
    "InventoryHistoryEntry",
    "InventoryRecord",
    "Order",
    "OrderHistoryEntry",
    "OrderItem",
    "PaymentConfirmation",
    "StockReservation",
    # Enumerations
    "CheckoutSessionStatus",
    "CheckoutStep",
    "ConfirmationStatus",
    "ConfirmationType",
    "HistoryEventType",
    "HistoryPriority",
    "HistorySource",
    "InventoryAction",
    "InventorySource",
    "OrderPaymentStatus",
    "OrderStatus",
    "ReservationStatus",
    # Value objects
    "Address",
    "Money",
    "PaymentMethod",
    "ShippingMethod",
    # Errors
    "DomainError",
    "ErrorKind",
    # Rules
    "is_valid_step_progression",
]
