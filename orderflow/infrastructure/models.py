"""SQLAlchemy models for database tables.

Provides ORM models for checkout sessions, orders, inventory,
reservations, payment confirmations and their append-only history
tables. Each model maps to and from its domain entity.
"""

from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

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
from orderflow.domain.state_machines import (
    CheckoutSessionStatus,
    CheckoutStep,
    ConfirmationStatus,
    OrderPaymentStatus,
    OrderStatus,
    ReservationStatus,
)
from orderflow.domain.value_objects import Address, PaymentMethod, ShippingMethod
from orderflow.infrastructure.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    """Attach UTC to timestamps read back from backends that drop it."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _dump(value: Any) -> dict[str, Any] | None:
    return asdict(value) if value is not None else None


def _load_address(data: dict[str, Any] | None) -> Address | None:
    return Address.from_dict(data) if data else None


def _load_shipping_method(data: dict[str, Any] | None) -> ShippingMethod | None:
    return ShippingMethod(**data) if data else None


def _load_payment_method(data: dict[str, Any] | None) -> PaymentMethod | None:
    return PaymentMethod(**data) if data else None


# ============================================================================
# Checkout Session Models
# ============================================================================


class CheckoutSessionModel(Base):
    """Checkout session model for database persistence."""

    __tablename__ = "checkout_sessions"

    id = Column(String(36), primary_key=True)
    session_token = Column(String(64), nullable=False, unique=True, index=True)
    cart_id = Column(String(100), nullable=False, index=True)
    user_id = Column(String(100), nullable=True, index=True)
    current_step = Column(String(20), nullable=False, default="cart")
    status = Column(String(20), nullable=False, default="active", index=True)

    shipping_address = Column(JSONType, nullable=True)
    billing_address = Column(JSONType, nullable=True)
    shipping_method = Column(JSONType, nullable=True)
    payment_method = Column(JSONType, nullable=True)
    customer_notes = Column(Text, nullable=True)

    order_id = Column(String(36), nullable=True)
    abandon_reason = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    # Timestamps
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    abandoned_at = Column(DateTime(timezone=True), nullable=True)

    @classmethod
    def from_entity(cls, session: CheckoutSession) -> "CheckoutSessionModel":
        return cls(
            id=session.id,
            session_token=session.session_token,
            cart_id=session.cart_id,
            user_id=session.user_id,
            current_step=session.current_step.value,
            status=session.status.value,
            shipping_address=_dump(session.shipping_address),
            billing_address=_dump(session.billing_address),
            shipping_method=_dump(session.shipping_method),
            payment_method=_dump(session.payment_method),
            customer_notes=session.customer_notes,
            order_id=session.order_id,
            abandon_reason=session.abandon_reason,
            version=session.version,
            expires_at=session.expires_at,
            created_at=session.created_at,
            updated_at=session.updated_at,
            completed_at=session.completed_at,
            abandoned_at=session.abandoned_at,
        )

    def to_entity(self) -> CheckoutSession:
        return CheckoutSession(
            id=self.id,
            session_token=self.session_token,
            cart_id=self.cart_id,
            user_id=self.user_id,
            current_step=CheckoutStep(self.current_step),
            status=CheckoutSessionStatus(self.status),
            shipping_address=_load_address(self.shipping_address),
            billing_address=_load_address(self.billing_address),
            shipping_method=_load_shipping_method(self.shipping_method),
            payment_method=_load_payment_method(self.payment_method),
            customer_notes=self.customer_notes,
            order_id=self.order_id,
            abandon_reason=self.abandon_reason,
            version=self.version,
            expires_at=_aware(self.expires_at),
            created_at=_aware(self.created_at),
            updated_at=_aware(self.updated_at),
            completed_at=_aware(self.completed_at),
            abandoned_at=_aware(self.abandoned_at),
        )


# ============================================================================
# Order Models
# ============================================================================


class OrderModel(Base):
    """Order model for database persistence.

    Represents an order created from a completed checkout session.
    Tracks the full order lifecycle from creation to delivery/refund.
    """

    __tablename__ = "orders"

    id = Column(String(36), primary_key=True)
    order_number = Column(String(40), nullable=False, unique=True, index=True)
    checkout_session_id = Column(String(36), nullable=False, unique=True, index=True)
    cart_id = Column(String(100), nullable=False)
    user_id = Column(String(100), nullable=True, index=True)
    status = Column(String(20), nullable=False, default="pending", index=True)
    payment_status = Column(String(20), nullable=False, default="pending")

    # Snapshot
    shipping_address = Column(JSONType, nullable=True)
    billing_address = Column(JSONType, nullable=True)
    shipping_method = Column(JSONType, nullable=True)
    payment_method = Column(JSONType, nullable=True)

    # Totals
    subtotal_cents = Column(Integer, nullable=False)
    tax_cents = Column(Integer, nullable=False, default=0)
    shipping_cents = Column(Integer, nullable=False, default=0)
    discount_cents = Column(Integer, nullable=False, default=0)
    total_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    # Fulfilment and notes
    tracking_number = Column(String(100), nullable=True)
    carrier = Column(String(100), nullable=True)
    customer_notes = Column(Text, nullable=True)
    admin_notes = Column(Text, nullable=True)
    is_flagged_for_fraud = Column(Boolean, nullable=False, default=False)
    cancelled_reason = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    processing_at = Column(DateTime(timezone=True), nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    items = relationship(
        "OrderItemModel",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItemModel.position",
    )

    @classmethod
    def from_entity(cls, order: Order) -> "OrderModel":
        return cls(
            id=order.id,
            order_number=order.order_number,
            checkout_session_id=order.checkout_session_id,
            cart_id=order.cart_id,
            user_id=order.user_id,
            status=order.status.value,
            payment_status=order.payment_status.value,
            shipping_address=_dump(order.shipping_address),
            billing_address=_dump(order.billing_address),
            shipping_method=_dump(order.shipping_method),
            payment_method=_dump(order.payment_method),
            subtotal_cents=order.subtotal_cents,
            tax_cents=order.tax_cents,
            shipping_cents=order.shipping_cents,
            discount_cents=order.discount_cents,
            total_cents=order.total_cents,
            currency=order.currency,
            tracking_number=order.tracking_number,
            carrier=order.carrier,
            customer_notes=order.customer_notes,
            admin_notes=order.admin_notes,
            is_flagged_for_fraud=order.is_flagged_for_fraud,
            cancelled_reason=order.cancelled_reason,
            version=order.version,
            created_at=order.created_at,
            updated_at=order.updated_at,
            confirmed_at=order.confirmed_at,
            processing_at=order.processing_at,
            shipped_at=order.shipped_at,
            delivered_at=order.delivered_at,
            cancelled_at=order.cancelled_at,
            refunded_at=order.refunded_at,
            items=[
                OrderItemModel.from_entity(item, order.id, position)
                for position, item in enumerate(order.items)
            ],
        )

    def to_entity(self) -> Order:
        return Order(
            id=self.id,
            order_number=self.order_number,
            checkout_session_id=self.checkout_session_id,
            cart_id=self.cart_id,
            user_id=self.user_id,
            status=OrderStatus(self.status),
            payment_status=OrderPaymentStatus(self.payment_status),
            shipping_address=_load_address(self.shipping_address),
            billing_address=_load_address(self.billing_address),
            shipping_method=_load_shipping_method(self.shipping_method),
            payment_method=_load_payment_method(self.payment_method),
            items=[item.to_entity() for item in self.items],
            subtotal_cents=self.subtotal_cents,
            tax_cents=self.tax_cents,
            shipping_cents=self.shipping_cents,
            discount_cents=self.discount_cents,
            total_cents=self.total_cents,
            currency=self.currency,
            tracking_number=self.tracking_number,
            carrier=self.carrier,
            customer_notes=self.customer_notes,
            admin_notes=self.admin_notes,
            is_flagged_for_fraud=self.is_flagged_for_fraud,
            cancelled_reason=self.cancelled_reason,
            version=self.version,
            created_at=_aware(self.created_at),
            updated_at=_aware(self.updated_at),
            confirmed_at=_aware(self.confirmed_at),
            processing_at=_aware(self.processing_at),
            shipped_at=_aware(self.shipped_at),
            delivered_at=_aware(self.delivered_at),
            cancelled_at=_aware(self.cancelled_at),
            refunded_at=_aware(self.refunded_at),
        )


class OrderItemModel(Base):
    """Order item model for database persistence.

    Represents an item within an order.
    """

    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True)
    order_id = Column(
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position = Column(Integer, nullable=False, default=0)
    product_id = Column(String(100), nullable=False, index=True)
    sku = Column(String(100), nullable=True)
    name = Column(String(500), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price_cents = Column(Integer, nullable=False)
    line_total_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    # Relationships
    order = relationship("OrderModel", back_populates="items")

    @classmethod
    def from_entity(cls, item: OrderItem, order_id: str, position: int) -> "OrderItemModel":
        return cls(
            id=item.id,
            order_id=order_id,
            position=position,
            product_id=item.product_id,
            sku=item.sku,
            name=item.name,
            quantity=item.quantity,
            unit_price_cents=item.unit_price_cents,
            line_total_cents=item.line_total_cents,
            currency=item.currency,
        )

    def to_entity(self) -> OrderItem:
        return OrderItem(
            id=self.id,
            product_id=self.product_id,
            sku=self.sku,
            name=self.name,
            quantity=self.quantity,
            unit_price_cents=self.unit_price_cents,
            currency=self.currency,
        )


class OrderHistoryModel(Base):
    """Order history model for the audit trail.

    Append-only: rows are inserted and never updated.
    """

    __tablename__ = "order_history"

    id = Column(String(36), primary_key=True)
    order_id = Column(String(36), nullable=False, index=True)
    event_type = Column(String(40), nullable=False, index=True)
    description = Column(Text, nullable=False)
    actor = Column(String(100), nullable=True)
    source = Column(String(20), nullable=False, default="system")
    priority = Column(String(20), nullable=False, default="normal", index=True)
    is_customer_visible = Column(Boolean, nullable=False, default=True)
    requires_follow_up = Column(Boolean, nullable=False, default=False, index=True)
    follow_up_notes = Column(Text, nullable=True)
    previous_value = Column(JSONType, nullable=True)
    new_value = Column(JSONType, nullable=True)
    event_metadata = Column("metadata", JSONType, nullable=True)
    user_id = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now, index=True)

    @classmethod
    def from_entity(cls, entry: OrderHistoryEntry) -> "OrderHistoryModel":
        return cls(
            id=entry.id,
            order_id=entry.order_id,
            event_type=entry.event_type.value,
            description=entry.description,
            actor=entry.actor,
            source=entry.source.value,
            priority=entry.priority.value,
            is_customer_visible=entry.is_customer_visible,
            requires_follow_up=entry.requires_follow_up,
            follow_up_notes=entry.follow_up_notes,
            previous_value=entry.previous_value,
            new_value=entry.new_value,
            event_metadata=entry.metadata,
            user_id=entry.user_id,
            created_at=entry.created_at,
        )

    def to_entity(self) -> OrderHistoryEntry:
        return OrderHistoryEntry(
            id=self.id,
            order_id=self.order_id,
            event_type=HistoryEventType(self.event_type),
            description=self.description,
            actor=self.actor,
            source=HistorySource(self.source),
            priority=HistoryPriority(self.priority),
            is_customer_visible=self.is_customer_visible,
            requires_follow_up=self.requires_follow_up,
            follow_up_notes=self.follow_up_notes,
            previous_value=self.previous_value,
            new_value=self.new_value,
            metadata=self.event_metadata or {},
            user_id=self.user_id,
            created_at=_aware(self.created_at),
        )


# ============================================================================
# Inventory Models
# ============================================================================


class InventoryRecordModel(Base):
    """Per-product stock counts."""

    __tablename__ = "inventory"

    product_id = Column(String(100), primary_key=True)
    quantity_on_hand = Column(Integer, nullable=False, default=0)
    quantity_reserved = Column(Integer, nullable=False, default=0)
    low_stock_threshold = Column(Integer, nullable=False, default=10)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    @classmethod
    def from_entity(cls, record: InventoryRecord) -> "InventoryRecordModel":
        return cls(
            product_id=record.product_id,
            quantity_on_hand=record.quantity_on_hand,
            quantity_reserved=record.quantity_reserved,
            low_stock_threshold=record.low_stock_threshold,
            version=record.version,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    def to_entity(self) -> InventoryRecord:
        return InventoryRecord(
            id=self.product_id,
            quantity_on_hand=self.quantity_on_hand,
            quantity_reserved=self.quantity_reserved,
            low_stock_threshold=self.low_stock_threshold,
            version=self.version,
            created_at=_aware(self.created_at),
            updated_at=_aware(self.updated_at),
        )


class StockReservationModel(Base):
    """Temporary stock hold owned by a checkout session."""

    __tablename__ = "stock_reservations"

    id = Column(String(36), primary_key=True)
    product_id = Column(
        String(100),
        ForeignKey("inventory.product_id"),
        nullable=False,
        index=True,
    )
    quantity = Column(Integer, nullable=False)
    reference = Column(String(36), nullable=False, index=True)
    customer_id = Column(String(100), nullable=True)
    order_id = Column(String(36), nullable=True, index=True)
    status = Column(String(20), nullable=False, default="active", index=True)
    release_reason = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)
    released_at = Column(DateTime(timezone=True), nullable=True)
    consumed_at = Column(DateTime(timezone=True), nullable=True)

    @classmethod
    def from_entity(cls, reservation: StockReservation) -> "StockReservationModel":
        return cls(
            id=reservation.id,
            product_id=reservation.product_id,
            quantity=reservation.quantity,
            reference=reservation.reference,
            customer_id=reservation.customer_id,
            order_id=reservation.order_id,
            status=reservation.status.value,
            release_reason=reservation.release_reason,
            version=reservation.version,
            expires_at=reservation.expires_at,
            created_at=reservation.created_at,
            updated_at=reservation.updated_at,
            released_at=reservation.released_at,
            consumed_at=reservation.consumed_at,
        )

    def to_entity(self) -> StockReservation:
        return StockReservation(
            id=self.id,
            product_id=self.product_id,
            quantity=self.quantity,
            reference=self.reference,
            customer_id=self.customer_id,
            order_id=self.order_id,
            status=ReservationStatus(self.status),
            release_reason=self.release_reason,
            version=self.version,
            expires_at=_aware(self.expires_at),
            created_at=_aware(self.created_at),
            updated_at=_aware(self.updated_at),
            released_at=_aware(self.released_at),
            consumed_at=_aware(self.consumed_at),
        )


class InventoryHistoryModel(Base):
    """Inventory audit trail. Append-only."""

    __tablename__ = "inventory_history"

    id = Column(String(36), primary_key=True)
    product_id = Column(String(100), nullable=False, index=True)
    action = Column(String(20), nullable=False)
    quantity_before = Column(Integer, nullable=False)
    quantity_after = Column(Integer, nullable=False)
    quantity_changed = Column(Integer, nullable=False)
    reserved_before = Column(Integer, nullable=False)
    reserved_after = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)
    source = Column(String(20), nullable=False)
    actor = Column(String(100), nullable=True)
    order_id = Column(String(36), nullable=True, index=True)
    reservation_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now, index=True)

    @classmethod
    def from_entity(cls, entry: InventoryHistoryEntry) -> "InventoryHistoryModel":
        return cls(
            id=entry.id,
            product_id=entry.product_id,
            action=entry.action.value,
            quantity_before=entry.quantity_before,
            quantity_after=entry.quantity_after,
            quantity_changed=entry.quantity_changed,
            reserved_before=entry.reserved_before,
            reserved_after=entry.reserved_after,
            reason=entry.reason,
            source=entry.source.value,
            actor=entry.actor,
            order_id=entry.order_id,
            reservation_id=entry.reservation_id,
            created_at=entry.created_at,
        )

    def to_entity(self) -> InventoryHistoryEntry:
        return InventoryHistoryEntry(
            id=self.id,
            product_id=self.product_id,
            action=InventoryAction(self.action),
            quantity_before=self.quantity_before,
            quantity_after=self.quantity_after,
            quantity_changed=self.quantity_changed,
            reserved_before=self.reserved_before,
            reserved_after=self.reserved_after,
            reason=self.reason,
            source=InventorySource(self.source),
            actor=self.actor,
            order_id=self.order_id,
            reservation_id=self.reservation_id,
            created_at=_aware(self.created_at),
        )


# ============================================================================
# Payment Confirmation Models
# ============================================================================


class PaymentConfirmationModel(Base):
    """Confirmation of a payment recorded by the payment service."""

    __tablename__ = "payment_confirmations"

    id = Column(String(36), primary_key=True)
    payment_id = Column(String(100), nullable=False, index=True)
    order_id = Column(String(36), nullable=True, index=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    confirmation_type = Column(String(20), nullable=False, default="manual")
    confirmation_status = Column(String(20), nullable=False, default="pending", index=True)
    created_by = Column(String(100), nullable=True)
    confirmed_by = Column(String(100), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    rule_name = Column(String(100), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    history = relationship(
        "ConfirmationHistoryModel",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ConfirmationHistoryModel.timestamp",
    )

    @classmethod
    def from_entity(cls, confirmation: PaymentConfirmation) -> "PaymentConfirmationModel":
        return cls(
            id=confirmation.id,
            payment_id=confirmation.payment_id,
            order_id=confirmation.order_id,
            amount_cents=confirmation.amount_cents,
            currency=confirmation.currency,
            confirmation_type=confirmation.confirmation_type.value,
            confirmation_status=confirmation.confirmation_status.value,
            created_by=confirmation.created_by,
            confirmed_by=confirmation.confirmed_by,
            confirmed_at=confirmation.confirmed_at,
            rejection_reason=confirmation.rejection_reason,
            notes=confirmation.notes,
            rule_name=confirmation.rule_name,
            version=confirmation.version,
            created_at=confirmation.created_at,
            updated_at=confirmation.updated_at,
        )

    def to_entity(self) -> PaymentConfirmation:
        return PaymentConfirmation(
            id=self.id,
            payment_id=self.payment_id,
            order_id=self.order_id,
            amount_cents=self.amount_cents,
            currency=self.currency,
            confirmation_type=ConfirmationType(self.confirmation_type),
            confirmation_status=ConfirmationStatus(self.confirmation_status),
            created_by=self.created_by,
            confirmed_by=self.confirmed_by,
            confirmed_at=_aware(self.confirmed_at),
            rejection_reason=self.rejection_reason,
            notes=self.notes,
            rule_name=self.rule_name,
            version=self.version,
            created_at=_aware(self.created_at),
            updated_at=_aware(self.updated_at),
        )


class ConfirmationHistoryModel(Base):
    """Payment confirmation audit trail. Append-only."""

    __tablename__ = "payment_confirmation_history"

    id = Column(String(36), primary_key=True)
    confirmation_id = Column(
        String(36),
        ForeignKey("payment_confirmations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action = Column(String(40), nullable=False)
    status = Column(String(20), nullable=False)
    actor = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_now)

    @classmethod
    def from_entity(cls, entry: ConfirmationHistoryEntry) -> "ConfirmationHistoryModel":
        return cls(
            id=entry.id,
            confirmation_id=entry.confirmation_id,
            action=entry.action,
            status=entry.status.value,
            actor=entry.actor,
            notes=entry.notes,
            timestamp=entry.timestamp,
        )

    def to_entity(self) -> ConfirmationHistoryEntry:
        return ConfirmationHistoryEntry(
            id=self.id,
            confirmation_id=self.confirmation_id,
            action=self.action,
            status=ConfirmationStatus(self.status),
            actor=self.actor,
            notes=self.notes,
            timestamp=_aware(self.timestamp),
        )
