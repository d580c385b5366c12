"""Domain entities and aggregates.

Entities have identity and lifecycle. Aggregates are clusters of
entities with a root that ensures consistency. Status changes go
through the state machines in ``orderflow.domain.state_machines``.

History entries are frozen: once built they are never mutated, and the
repositories that store them only ever append.
"""

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from orderflow.domain.base import AggregateRoot, new_id, utcnow
from orderflow.domain.state_machines import (
    CheckoutSessionStatus,
    CheckoutStep,
    ConfirmationStatus,
    OrderPaymentStatus,
    OrderStatus,
    ReservationStatus,
    validate_confirmation_transition,
    validate_order_transition,
    validate_reservation_transition,
    validate_session_transition,
)
from orderflow.domain.exceptions import InvalidQuantityError
from orderflow.domain.value_objects import Address, Money, PaymentMethod, ShippingMethod


# ============================================================================
# Enumerations
# ============================================================================


class InventoryAction(str, Enum):
    """Kind of inventory mutation recorded in history."""

    INCREASE = "increase"
    DECREASE = "decrease"
    RESERVE = "reserve"
    RELEASE = "release"
    ADJUST = "adjust"
    INITIALIZE = "initialize"


class InventorySource(str, Enum):
    """Origin of an inventory mutation."""

    MANUAL = "manual"
    ORDER = "order"
    RETURN = "return"
    ADJUSTMENT = "adjustment"
    SYSTEM = "system"


class ConfirmationType(str, Enum):
    """How a payment confirmation was produced."""

    MANUAL = "manual"
    AUTOMATED = "automated"


class HistoryEventType(str, Enum):
    """Order history event categories."""

    ORDER_CREATED = "order_created"
    STATUS_CHANGED = "status_changed"
    PAYMENT_UPDATED = "payment_updated"
    SHIPPING_UPDATED = "shipping_updated"
    ADDRESS_CHANGED = "address_changed"
    NOTES_UPDATED = "notes_updated"
    FRAUD_FLAG_RAISED = "fraud_flag_raised"


class HistoryPriority(str, Enum):
    """Support priority of an order history event."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class HistorySource(str, Enum):
    """Who or what produced an order history event."""

    CUSTOMER = "customer"
    ADMIN = "admin"
    SYSTEM = "system"
    PAYMENT = "payment"
    AUTOMATION = "automation"


# ============================================================================
# Checkout Session Aggregate Root
# ============================================================================


@dataclass(kw_only=True)
class CheckoutSession(AggregateRoot[str]):
    """Checkout session aggregate root.

    Tracks a customer's progress from cart to order. The step moves
    through the checkout flow while the status guards completion:
    a session is flipped to LOCKED while its order is being built so
    concurrent completion attempts are rejected.

    Attributes:
        id: Unique session identifier.
        session_token: Opaque token handed to the client.
        cart_id: Cart being checked out.
        user_id: Customer, if known.
        current_step: Current step in the checkout flow.
        status: Current lifecycle status.
        expires_at: When the session stops accepting changes.
        order_id: Order created from this session.
    """

    id: str
    cart_id: str
    expires_at: datetime
    session_token: str = field(default_factory=lambda: secrets.token_urlsafe(24))
    user_id: str | None = None
    current_step: CheckoutStep = CheckoutStep.CART
    status: CheckoutSessionStatus = CheckoutSessionStatus.ACTIVE
    shipping_address: Address | None = None
    billing_address: Address | None = None
    shipping_method: ShippingMethod | None = None
    payment_method: PaymentMethod | None = None
    customer_notes: str | None = None
    order_id: str | None = None
    completed_at: datetime | None = None
    abandoned_at: datetime | None = None
    abandon_reason: str | None = None

    @classmethod
    def create(
        cls,
        cart_id: str,
        ttl: timedelta,
        user_id: str | None = None,
    ) -> "CheckoutSession":
        """Create a new checkout session.

        Args:
            cart_id: Cart being checked out.
            ttl: Time until the session expires.
            user_id: Customer, if known.

        Returns:
            New CheckoutSession on the cart step.
        """
        return cls(
            id=new_id(),
            cart_id=cart_id,
            user_id=user_id,
            expires_at=utcnow() + ttl,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def move_to_step(self, step: CheckoutStep) -> None:
        self.current_step = step
        self._touch()

    def update_details(self, **changes: Any) -> None:
        """Replace checkout details such as addresses, methods or notes."""
        for name, value in changes.items():
            if name not in _SESSION_DETAIL_FIELDS:
                raise AttributeError(f"CheckoutSession has no detail field '{name}'")
            setattr(self, name, value)
        self._touch()

    def extend_expiry(self, extra: timedelta) -> None:
        self.expires_at = max(self.expires_at, utcnow()) + extra
        self._touch()

    def transition_to(self, status: CheckoutSessionStatus, reason: str | None = None) -> None:
        """Change lifecycle status.

        Args:
            status: Target status.
            reason: Why the session was abandoned, if it was.

        Raises:
            InvalidStateTransitionError: If not in valid state.
        """
        validate_session_transition(self.id, self.status, status)
        self.status = status
        if status == CheckoutSessionStatus.COMPLETED:
            self.completed_at = utcnow()
        elif status == CheckoutSessionStatus.ABANDONED:
            self.abandoned_at = utcnow()
            self.abandon_reason = reason
        self._touch()


_SESSION_DETAIL_FIELDS = frozenset(
    {"shipping_address", "billing_address", "shipping_method", "payment_method", "customer_notes"}
)


# ============================================================================
# Order Aggregate Root
# ============================================================================


@dataclass
class OrderItem:
    """Line item snapshot taken when the order was created.

    Deliberately decoupled from live catalog data so historical orders
    keep the price and name the customer actually saw.
    """

    product_id: str
    name: str
    unit_price_cents: int
    quantity: int
    sku: str | None = None
    currency: str = "USD"
    id: str = field(default_factory=new_id)

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass(kw_only=True)
class Order(AggregateRoot[str]):
    """Order aggregate root.

    Addresses, items and totals are an immutable snapshot of the checkout
    at creation time. Only status, payment status and fulfilment details
    change afterwards, through the order status engine.
    """

    id: str
    order_number: str
    checkout_session_id: str
    cart_id: str
    items: list[OrderItem]
    subtotal_cents: int
    total_cents: int
    tax_cents: int = 0
    shipping_cents: int = 0
    discount_cents: int = 0
    currency: str = "USD"
    user_id: str | None = None
    status: OrderStatus = OrderStatus.PENDING
    payment_status: OrderPaymentStatus = OrderPaymentStatus.PENDING
    shipping_address: Address | None = None
    billing_address: Address | None = None
    shipping_method: ShippingMethod | None = None
    payment_method: PaymentMethod | None = None
    tracking_number: str | None = None
    carrier: str | None = None
    customer_notes: str | None = None
    admin_notes: str | None = None
    is_flagged_for_fraud: bool = False
    cancelled_reason: str | None = None
    confirmed_at: datetime | None = None
    processing_at: datetime | None = None
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    refunded_at: datetime | None = None

    @property
    def item_count(self) -> int:
        """Get total number of units across all items."""
        return sum(item.quantity for item in self.items)

    @property
    def total(self) -> Money:
        return Money(self.total_cents, self.currency)

    def transition_to(self, status: OrderStatus, reason: str | None = None) -> OrderStatus:
        """Move the order to a new status.

        Args:
            status: Target status.
            reason: Cancellation reason, kept when cancelling.

        Returns:
            The previous status.

        Raises:
            InvalidStateTransitionError: If the edge does not exist.
        """
        validate_order_transition(self.id, self.status, status, self.payment_status)
        previous = self.status
        now = utcnow()
        self.status = status
        if status == OrderStatus.CONFIRMED:
            self.confirmed_at = now
        elif status == OrderStatus.PROCESSING:
            self.processing_at = now
        elif status == OrderStatus.SHIPPED:
            self.shipped_at = now
        elif status == OrderStatus.DELIVERED:
            self.delivered_at = now
        elif status == OrderStatus.CANCELLED:
            self.cancelled_at = now
            self.cancelled_reason = reason
        elif status == OrderStatus.REFUNDED:
            self.refunded_at = now
        self._touch()
        return previous

    def update_payment_status(self, payment_status: OrderPaymentStatus) -> OrderPaymentStatus:
        """Set the payment status and return the previous one."""
        previous = self.payment_status
        self.payment_status = payment_status
        self._touch()
        return previous

    def update_shipping(self, tracking_number: str, carrier: str | None = None) -> None:
        self.tracking_number = tracking_number
        if carrier:
            self.carrier = carrier
        self._touch()

    def update_notes(self, note_type: str, notes: str) -> str | None:
        """Replace customer or admin notes.

        Args:
            note_type: ``customer`` or ``admin``.
            notes: New notes text.

        Returns:
            The previous notes.
        """
        if note_type == "customer":
            previous, self.customer_notes = self.customer_notes, notes
        else:
            previous, self.admin_notes = self.admin_notes, notes
        self._touch()
        return previous

    def flag_for_fraud(self) -> None:
        self.is_flagged_for_fraud = True
        self._touch()


# ============================================================================
# Inventory
# ============================================================================


@dataclass(kw_only=True)
class InventoryRecord(AggregateRoot[str]):
    """Stock level for one product.

    The record id is the product id. Invariant: on-hand and reserved
    are never negative and reserved never exceeds on-hand.
    """

    id: str
    quantity_on_hand: int = 0
    quantity_reserved: int = 0
    low_stock_threshold: int = 10

    @property
    def product_id(self) -> str:
        return self.id

    @property
    def quantity_available(self) -> int:
        return self.quantity_on_hand - self.quantity_reserved

    @property
    def is_low_stock(self) -> bool:
        return self.quantity_available <= self.low_stock_threshold

    def apply(self, on_hand_delta: int = 0, reserved_delta: int = 0) -> None:
        """Apply a change to on-hand and reserved quantities together.

        Args:
            on_hand_delta: Change to physical stock.
            reserved_delta: Change to held stock.

        Raises:
            InvalidQuantityError: If the result would break the invariant.
        """
        on_hand = self.quantity_on_hand + on_hand_delta
        reserved = self.quantity_reserved + reserved_delta
        if on_hand < 0:
            raise InvalidQuantityError(on_hand, "Quantity on hand cannot go below zero")
        if reserved < 0:
            raise InvalidQuantityError(reserved, "Reserved quantity cannot go below zero")
        if reserved > on_hand:
            raise InvalidQuantityError(
                on_hand, f"Quantity on hand cannot drop below reserved quantity {reserved}"
            )
        self.quantity_on_hand = on_hand
        self.quantity_reserved = reserved
        self._touch()


@dataclass(kw_only=True)
class StockReservation(AggregateRoot[str]):
    """Temporary hold on inventory for a checkout session.

    Attributes:
        product_id: Product held.
        quantity: Units held.
        reference: Owning checkout session.
        customer_id: Customer, if known.
        order_id: Order that consumed the hold.
        expires_at: When the sweep may release it.
    """

    id: str
    product_id: str
    quantity: int
    reference: str
    expires_at: datetime
    customer_id: str | None = None
    order_id: str | None = None
    status: ReservationStatus = ReservationStatus.ACTIVE
    release_reason: str | None = None
    released_at: datetime | None = None
    consumed_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def transition_to(self, status: ReservationStatus) -> None:
        validate_reservation_transition(self.id, self.status, status)
        self.status = status
        if status == ReservationStatus.RELEASED:
            self.released_at = utcnow()
        elif status == ReservationStatus.CONSUMED:
            self.consumed_at = utcnow()
        else:
            self.consumed_at = None
        self._touch()


@dataclass(frozen=True, kw_only=True)
class InventoryHistoryEntry:
    """One immutable line of the inventory audit trail."""

    product_id: str
    action: InventoryAction
    quantity_before: int
    quantity_after: int
    quantity_changed: int
    reserved_before: int
    reserved_after: int
    reason: str
    source: InventorySource
    actor: str | None = None
    order_id: str | None = None
    reservation_id: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        """Validate the quantity arithmetic."""
        if self.quantity_after != self.quantity_before + self.quantity_changed:
            raise ValueError(
                f"Inconsistent history entry: {self.quantity_before} + "
                f"{self.quantity_changed} != {self.quantity_after}"
            )


# ============================================================================
# Payment Confirmation Aggregate Root
# ============================================================================


@dataclass(kw_only=True)
class PaymentConfirmation(AggregateRoot[str]):
    """Confirmation record for an externally recorded payment.

    The confirmation is the source of truth for whether a payment was
    accepted; order payment status follows it eventually.
    """

    id: str
    payment_id: str
    order_id: str | None
    amount_cents: int
    currency: str = "USD"
    confirmation_type: ConfirmationType = ConfirmationType.MANUAL
    confirmation_status: ConfirmationStatus = ConfirmationStatus.PENDING
    created_by: str | None = None
    confirmed_by: str | None = None
    confirmed_at: datetime | None = None
    rejection_reason: str | None = None
    notes: str | None = None
    rule_name: str | None = None

    def transition_to(self, status: ConfirmationStatus) -> ConfirmationStatus:
        """Move to a new status.

        Returns:
            The previous status.

        Raises:
            InvalidStateTransitionError: If the edge does not exist.
        """
        validate_confirmation_transition(self.id, self.confirmation_status, status)
        previous = self.confirmation_status
        self.confirmation_status = status
        self._touch()
        return previous


@dataclass(frozen=True, kw_only=True)
class ConfirmationHistoryEntry:
    """One immutable action taken on a payment confirmation."""

    confirmation_id: str
    action: str
    status: ConfirmationStatus
    actor: str | None = None
    notes: str | None = None
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)


# ============================================================================
# Order History
# ============================================================================


@dataclass(frozen=True, kw_only=True)
class OrderHistoryEntry:
    """One immutable order audit event."""

    order_id: str
    event_type: HistoryEventType
    description: str
    actor: str | None = None
    source: HistorySource = HistorySource.SYSTEM
    priority: HistoryPriority = HistoryPriority.NORMAL
    is_customer_visible: bool = True
    requires_follow_up: bool = False
    follow_up_notes: str | None = None
    previous_value: dict[str, Any] | None = None
    new_value: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    user_id: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "event_type": self.event_type.value,
            "description": self.description,
            "actor": self.actor,
            "source": self.source.value,
            "priority": self.priority.value,
            "is_customer_visible": self.is_customer_visible,
            "requires_follow_up": self.requires_follow_up,
            "follow_up_notes": self.follow_up_notes,
            "previous_value": self.previous_value,
            "new_value": self.new_value,
            "metadata": self.metadata,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
        }
