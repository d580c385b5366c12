"""Tests for domain entities."""

from datetime import timedelta

import pytest

from orderflow.domain import (
    CheckoutSession,
    CheckoutSessionStatus,
    InventoryAction,
    InventoryHistoryEntry,
    InventoryRecord,
    InventorySource,
    Order,
    OrderItem,
    OrderPaymentStatus,
    OrderStatus,
    ReservationStatus,
    StockReservation,
)
from orderflow.domain.base import utcnow
from orderflow.domain.exceptions import InvalidQuantityError, InvalidStateTransitionError


def _order(**overrides) -> Order:
    defaults = dict(
        id="ord-1",
        order_number="ORD-20260101-ABCDEF",
        checkout_session_id="sess-1",
        cart_id="cart-1",
        items=[OrderItem(product_id="prod-a", name="A", unit_price_cents=1500, quantity=2)],
        subtotal_cents=3000,
        total_cents=3000,
    )
    defaults.update(overrides)
    return Order(**defaults)


class TestCheckoutSession:
    """Tests for CheckoutSession aggregate."""

    def test_create_starts_active_on_cart(self) -> None:
        """A new session is active on the cart step with a token."""
        session = CheckoutSession.create("cart-1", timedelta(minutes=30), user_id="u-1")

        assert session.status == CheckoutSessionStatus.ACTIVE
        assert session.current_step.value == "cart"
        assert session.session_token
        assert not session.is_expired()

    def test_tokens_are_unique(self) -> None:
        """Each session gets its own token."""
        first = CheckoutSession.create("cart-1", timedelta(minutes=30))
        second = CheckoutSession.create("cart-1", timedelta(minutes=30))
        assert first.session_token != second.session_token

    def test_is_expired_at_boundary(self) -> None:
        """A session is expired from its expiry instant onwards."""
        session = CheckoutSession.create("cart-1", timedelta(minutes=30))
        assert session.is_expired(session.expires_at)
        assert not session.is_expired(session.expires_at - timedelta(seconds=1))

    def test_update_details_bumps_version(self) -> None:
        """Detail changes are applied and bump the version."""
        session = CheckoutSession.create("cart-1", timedelta(minutes=30))
        version = session.version

        session.update_details(customer_notes="leave at door")

        assert session.customer_notes == "leave at door"
        assert session.version == version + 1

    def test_update_details_rejects_unknown_fields(self) -> None:
        """Only checkout detail fields may be updated."""
        session = CheckoutSession.create("cart-1", timedelta(minutes=30))
        with pytest.raises(AttributeError):
            session.update_details(status=CheckoutSessionStatus.COMPLETED)
        assert session.status == CheckoutSessionStatus.ACTIVE

    def test_extend_expiry_from_now_when_expired(self) -> None:
        """Extending an expired session counts from the current time."""
        session = CheckoutSession.create("cart-1", timedelta(minutes=30))
        session.expires_at = utcnow() - timedelta(hours=1)

        session.extend_expiry(timedelta(minutes=10))

        assert session.expires_at > utcnow() + timedelta(minutes=9)

    def test_abandon_records_reason(self) -> None:
        """Abandoning stores the reason and timestamp."""
        session = CheckoutSession.create("cart-1", timedelta(minutes=30))
        session.transition_to(CheckoutSessionStatus.ABANDONED, reason="timeout")

        assert session.abandon_reason == "timeout"
        assert session.abandoned_at is not None

    def test_complete_requires_lock(self) -> None:
        """ACTIVE cannot jump straight to COMPLETED."""
        session = CheckoutSession.create("cart-1", timedelta(minutes=30))
        with pytest.raises(InvalidStateTransitionError):
            session.transition_to(CheckoutSessionStatus.COMPLETED)

        session.transition_to(CheckoutSessionStatus.LOCKED)
        session.transition_to(CheckoutSessionStatus.COMPLETED)
        assert session.completed_at is not None


class TestOrder:
    """Tests for Order aggregate."""

    def test_item_count_and_totals(self) -> None:
        """item_count sums quantities and line totals multiply."""
        order = _order()
        assert order.item_count == 2
        assert order.items[0].line_total_cents == 3000
        assert order.total.amount_cents == 3000

    def test_transition_sets_timestamps(self) -> None:
        """Each status change stamps its own timestamp."""
        order = _order()

        previous = order.transition_to(OrderStatus.CONFIRMED)
        order.transition_to(OrderStatus.PROCESSING)
        order.transition_to(OrderStatus.SHIPPED)

        assert previous == OrderStatus.PENDING
        assert order.confirmed_at is not None
        assert order.processing_at is not None
        assert order.shipped_at is not None
        assert order.delivered_at is None

    def test_cancel_keeps_reason(self) -> None:
        """Cancelling records the reason."""
        order = _order()
        order.transition_to(OrderStatus.CANCELLED, reason="customer request")
        assert order.cancelled_reason == "customer request"
        assert order.cancelled_at is not None

    def test_invalid_transition_leaves_order_untouched(self) -> None:
        """A rejected transition changes neither status nor version."""
        order = _order()
        version = order.version
        with pytest.raises(InvalidStateTransitionError):
            order.transition_to(OrderStatus.SHIPPED)
        assert order.status == OrderStatus.PENDING
        assert order.version == version

    def test_paid_order_can_be_refunded_mid_flight(self) -> None:
        """Payment status PAID unlocks refunds from a non-terminal state."""
        order = _order()
        order.transition_to(OrderStatus.CONFIRMED)
        order.update_payment_status(OrderPaymentStatus.PAID)

        order.transition_to(OrderStatus.REFUNDED)

        assert order.refunded_at is not None

    def test_update_notes_returns_previous(self) -> None:
        """Notes updates return the previous text for the audit trail."""
        order = _order(customer_notes="old")
        assert order.update_notes("customer", "new") == "old"
        assert order.update_notes("admin", "internal") is None
        assert order.customer_notes == "new"
        assert order.admin_notes == "internal"


class TestInventoryRecord:
    """Tests for InventoryRecord invariants."""

    def test_available_is_on_hand_minus_reserved(self) -> None:
        """Available stock excludes held units."""
        record = InventoryRecord(id="prod-a", quantity_on_hand=10, quantity_reserved=3)
        assert record.quantity_available == 7
        assert record.product_id == "prod-a"

    def test_apply_moves_both_counters(self) -> None:
        """apply() changes on-hand and reserved together."""
        record = InventoryRecord(id="prod-a", quantity_on_hand=10, quantity_reserved=3)
        record.apply(on_hand_delta=-3, reserved_delta=-3)
        assert record.quantity_on_hand == 7
        assert record.quantity_reserved == 0

    @pytest.mark.parametrize(
        ("on_hand_delta", "reserved_delta"),
        [(-11, 0), (0, -4), (0, 8), (-8, 0)],
    )
    def test_apply_rejects_broken_invariant(self, on_hand_delta: int, reserved_delta: int) -> None:
        """Negative counters or reserved above on-hand are rejected."""
        record = InventoryRecord(id="prod-a", quantity_on_hand=10, quantity_reserved=3)
        with pytest.raises(InvalidQuantityError):
            record.apply(on_hand_delta=on_hand_delta, reserved_delta=reserved_delta)
        assert record.quantity_on_hand == 10
        assert record.quantity_reserved == 3

    def test_low_stock_uses_available(self) -> None:
        """Low stock compares available, not on-hand, to the threshold."""
        record = InventoryRecord(
            id="prod-a", quantity_on_hand=20, quantity_reserved=15, low_stock_threshold=5
        )
        assert record.is_low_stock


class TestInventoryHistoryEntry:
    """Tests for InventoryHistoryEntry arithmetic."""

    def test_consistent_entry(self) -> None:
        """before + changed == after is accepted."""
        entry = InventoryHistoryEntry(
            product_id="prod-a",
            action=InventoryAction.DECREASE,
            quantity_before=10,
            quantity_after=8,
            quantity_changed=-2,
            reserved_before=2,
            reserved_after=0,
            reason="consumed",
            source=InventorySource.ORDER,
        )
        assert entry.quantity_after == 8

    def test_inconsistent_entry_rejected(self) -> None:
        """Entries whose arithmetic does not add up cannot be built."""
        with pytest.raises(ValueError, match="Inconsistent history entry"):
            InventoryHistoryEntry(
                product_id="prod-a",
                action=InventoryAction.INCREASE,
                quantity_before=10,
                quantity_after=15,
                quantity_changed=3,
                reserved_before=0,
                reserved_after=0,
                reason="restock",
                source=InventorySource.MANUAL,
            )


class TestStockReservation:
    """Tests for StockReservation lifecycle."""

    def _reservation(self) -> StockReservation:
        return StockReservation(
            id="res-1",
            product_id="prod-a",
            quantity=2,
            reference="sess-1",
            expires_at=utcnow() + timedelta(minutes=15),
        )

    def test_consume_then_restore(self) -> None:
        """A consumed hold can be restored, clearing consumed_at."""
        reservation = self._reservation()
        reservation.transition_to(ReservationStatus.CONSUMED)
        assert reservation.consumed_at is not None

        reservation.transition_to(ReservationStatus.ACTIVE)
        assert reservation.consumed_at is None

    def test_release_is_final(self) -> None:
        """A released hold cannot be consumed."""
        reservation = self._reservation()
        reservation.transition_to(ReservationStatus.RELEASED)
        with pytest.raises(InvalidStateTransitionError):
            reservation.transition_to(ReservationStatus.CONSUMED)
