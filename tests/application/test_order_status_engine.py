"""Tests for the order status engine."""

from datetime import timedelta

import pytest

from orderflow.application.order_status_service import (
    CANCEL_IN_PROGRESS_WARNING,
    AutomationRule,
    OrderStatusEngine,
)
from orderflow.domain import (
    HistoryEventType,
    HistoryPriority,
    HistorySource,
    OrderPaymentStatus,
    OrderStatus,
)
from orderflow.domain.base import utcnow


async def _advance(services, order_id: str, *statuses: OrderStatus) -> None:
    for status in statuses:
        (await services.status_engine.update_order_status(order_id, status)).unwrap()


class TestStatusTransitions:
    """Tests for update_order_status."""

    def test_validate_status_transition(self) -> None:
        """Refunds before delivery need a paid payment."""
        validate = OrderStatusEngine.validate_status_transition

        assert validate(OrderStatus.PENDING, OrderStatus.CONFIRMED)
        assert not validate(OrderStatus.DELIVERED, OrderStatus.PENDING)
        assert not validate(OrderStatus.SHIPPED, OrderStatus.REFUNDED)
        assert validate(OrderStatus.SHIPPED, OrderStatus.REFUNDED, OrderPaymentStatus.PAID)
        assert not validate(OrderStatus.CANCELLED, OrderStatus.REFUNDED, OrderPaymentStatus.PAID)

    @pytest.mark.asyncio
    async def test_valid_transition_recorded(self, services, place_order) -> None:
        """A valid change is saved and written to history."""
        order = await place_order()

        result = await services.status_engine.update_order_status(
            order.id, OrderStatus.CONFIRMED, actor="admin", source=HistorySource.ADMIN
        )

        assert result.success
        assert result.value.previous_status == OrderStatus.PENDING
        assert result.value.order.status == OrderStatus.CONFIRMED
        timeline = await services.status_engine.get_status_timeline(order.id)
        assert [(e.previous_value, e.new_value) for e in timeline] == [
            ({"status": "pending"}, {"status": "confirmed"})
        ]
        assert timeline[0].source == HistorySource.ADMIN

    @pytest.mark.asyncio
    async def test_invalid_transition_rejected(self, services, place_order) -> None:
        """An edge that does not exist fails and leaves the order untouched."""
        order = await place_order()

        result = await services.status_engine.update_order_status(order.id, OrderStatus.SHIPPED)

        assert result.error_code == "INVALID_TRANSITION"
        assert "Invalid status transition" in result.error
        assert (await services.status_engine.get_order(order.id)).value.status == OrderStatus.PENDING
        assert await services.status_engine.get_status_timeline(order.id) == []

    @pytest.mark.asyncio
    async def test_delivered_to_pending_rejected(self, services, place_order) -> None:
        """Delivered orders cannot go back to pending."""
        order = await place_order()
        await _advance(
            services,
            order.id,
            OrderStatus.CONFIRMED,
            OrderStatus.PROCESSING,
            OrderStatus.SHIPPED,
            OrderStatus.DELIVERED,
        )

        result = await services.status_engine.update_order_status(order.id, OrderStatus.PENDING)

        assert result.error_code == "INVALID_TRANSITION"

    @pytest.mark.asyncio
    async def test_unknown_order(self, services) -> None:
        """Unknown orders are reported as not found."""
        result = await services.status_engine.update_order_status("nope", OrderStatus.CONFIRMED)
        assert result.error_code == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_cancellation_is_high_priority(self, services, place_order) -> None:
        """Cancelling records the reason with high priority."""
        order = await place_order()

        result = await services.status_engine.update_order_status(
            order.id, OrderStatus.CANCELLED, notes="customer request"
        )

        assert result.value.order.cancelled_reason == "customer request"
        timeline = await services.status_engine.get_status_timeline(order.id)
        assert timeline[-1].priority == HistoryPriority.HIGH

    @pytest.mark.asyncio
    async def test_bulk_update(self, services, place_order) -> None:
        """Each order in a bulk update succeeds or fails on its own."""
        first = await place_order("cart-1")
        second = await place_order("cart-2")
        await _advance(services, second.id, OrderStatus.CANCELLED)

        results = await services.status_engine.bulk_update_status(
            [first.id, second.id], OrderStatus.CONFIRMED
        )

        assert results[first.id].success
        assert not results[second.id].success

    @pytest.mark.asyncio
    async def test_orders_by_status(self, services, place_order) -> None:
        """Orders can be listed per status."""
        first = await place_order("cart-1")
        await place_order("cart-2")
        await _advance(services, first.id, OrderStatus.CONFIRMED)

        orders, total = await services.status_engine.get_orders_by_status(OrderStatus.PENDING)

        assert total == 1
        assert orders[0].id != first.id


class TestAutomationRules:
    """Tests for the default rule table."""

    @pytest.mark.asyncio
    async def test_confirmation_rules(self, services, place_order) -> None:
        """Confirming runs reservation finalization and the notification."""
        order = await place_order()

        result = await services.status_engine.update_order_status(order.id, OrderStatus.CONFIRMED)

        assert result.value.rules_applied == [
            "finalize_reservations",
            "send_confirmation_notification",
        ]
        assert "order.confirmed" in services.notifier.events()

    @pytest.mark.asyncio
    async def test_shipping_creates_tracking_number(self, services, place_order) -> None:
        """Shipping assigns a TRK tracking number and the method's carrier."""
        order = await place_order()
        await _advance(services, order.id, OrderStatus.CONFIRMED, OrderStatus.PROCESSING)

        result = await services.status_engine.update_order_status(order.id, OrderStatus.SHIPPED)

        shipped = result.value.order
        assert shipped.tracking_number.startswith("TRK")
        assert len(shipped.tracking_number) == 15
        assert shipped.carrier == "DHL"
        assert "order.shipped" in services.notifier.events()
        events = (await services.history.get_statistics(order.id)).by_event_type
        assert events[HistoryEventType.SHIPPING_UPDATED.value] == 1

    @pytest.mark.asyncio
    async def test_shipping_notification_carries_tracking(self, services, place_order) -> None:
        """The shipped notification sees the tracking number assigned just before it."""
        order = await place_order()
        await _advance(services, order.id, OrderStatus.CONFIRMED, OrderStatus.PROCESSING)

        result = await services.status_engine.update_order_status(order.id, OrderStatus.SHIPPED)

        payload = next(p for event, p in services.notifier.sent if event == "order.shipped")
        assert payload["tracking_number"] == result.value.order.tracking_number
        assert payload["tracking_number"].startswith("TRK")
        assert payload["status"] == "shipped"
        assert payload["previous_status"] == "processing"

    @pytest.mark.asyncio
    async def test_existing_tracking_number_kept(self, services, place_order) -> None:
        """A tracking number entered before shipping is not replaced."""
        order = await place_order()
        await _advance(services, order.id, OrderStatus.CONFIRMED, OrderStatus.PROCESSING)
        await services.status_engine.update_shipping_info(order.id, "1Z999", "UPS", actor="admin")

        result = await services.status_engine.update_order_status(order.id, OrderStatus.SHIPPED)

        assert result.value.order.tracking_number == "1Z999"
        assert result.value.order.carrier == "UPS"

    @pytest.mark.asyncio
    async def test_cancellation_restocks(self, services, place_order) -> None:
        """Cancelling returns the consumed units to stock."""
        order = await place_order()
        await _advance(services, order.id, OrderStatus.CONFIRMED)

        result = await services.status_engine.update_order_status(order.id, OrderStatus.CANCELLED)

        assert result.success
        assert result.warnings == []
        record = (await services.ledger.get_record("prod-a")).value
        assert record.quantity_on_hand == 10
        assert "order.cancelled" in services.notifier.events()

    @pytest.mark.asyncio
    async def test_inventory_rule_failure_is_warning(self, services, place_order) -> None:
        """A failing inventory rule leaves the status changed and warns."""
        order = await place_order()

        async def broken(order, ctx):
            raise RuntimeError("ledger offline")

        async def noisy(order, ctx):
            raise RuntimeError("smtp offline")

        engine = OrderStatusEngine(
            services.order_repo,
            services.history,
            rules=[
                AutomationRule("notify", OrderStatus.CANCELLED, noisy, priority=50),
                AutomationRule(
                    "restock", OrderStatus.CANCELLED, broken, affects_inventory=True, priority=10
                ),
            ],
            settings=services.settings,
        )

        result = await engine.update_order_status(order.id, OrderStatus.CANCELLED)

        assert result.success
        assert result.value.order.status == OrderStatus.CANCELLED
        assert result.value.rules_failed == ["restock", "notify"]
        assert result.warnings == ["Automation rule 'restock' failed: ledger offline"]

    @pytest.mark.asyncio
    async def test_cancel_in_progress_without_inventory_rule(self, services, place_order) -> None:
        """Without an inventory rule, cancelling a confirmed order warns."""
        order = await place_order()
        await _advance(services, order.id, OrderStatus.CONFIRMED)
        engine = OrderStatusEngine(services.order_repo, services.history, rules=[])

        result = await engine.update_order_status(order.id, OrderStatus.CANCELLED)

        assert result.warnings == [CANCEL_IN_PROGRESS_WARNING]

    @pytest.mark.asyncio
    async def test_automated_progression(self, services, place_order) -> None:
        """Confirmed orders older than the delay move to processing."""
        waiting = await place_order("cart-1")
        pending = await place_order("cart-2")
        await _advance(services, waiting.id, OrderStatus.CONFIRMED)
        later = utcnow() + timedelta(hours=services.settings.auto_processing_after_hours, minutes=1)

        moved = await services.status_engine.process_automated_progressions(later)

        assert moved == [waiting.id]
        assert (await services.status_engine.get_order(pending.id)).value.status == OrderStatus.PENDING
        assert await services.status_engine.process_automated_progressions(utcnow()) == []
        timeline = await services.status_engine.get_status_timeline(waiting.id)
        assert timeline[-1].source == HistorySource.AUTOMATION


class TestOtherUpdates:
    """Tests for payment, shipping, notes and fraud updates."""

    @pytest.mark.asyncio
    async def test_payment_status(self, services, place_order) -> None:
        """Payment status changes are recorded, repeats are no-ops."""
        order = await place_order()

        await services.status_engine.update_payment_status(order.id, OrderPaymentStatus.PAID)
        again = await services.status_engine.update_payment_status(
            order.id, OrderPaymentStatus.PAID
        )

        assert again.value.payment_status == OrderPaymentStatus.PAID
        stats = await services.history.get_statistics(order.id)
        assert stats.by_event_type[HistoryEventType.PAYMENT_UPDATED.value] == 1

    @pytest.mark.asyncio
    async def test_tracking_number_required(self, services, place_order) -> None:
        """An empty tracking number is rejected."""
        order = await place_order()
        result = await services.status_engine.update_shipping_info(order.id, "")
        assert result.error_code == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_notes(self, services, place_order) -> None:
        """Admin notes are hidden from the customer timeline."""
        order = await place_order()

        await services.status_engine.update_notes(order.id, "fragile", note_type="admin")
        await services.status_engine.update_notes(order.id, "ring bell", note_type="customer")
        bad = await services.status_engine.update_notes(order.id, "x", note_type="internal")

        assert bad.error_code == "VALIDATION_ERROR"
        visible = await services.history.get_customer_history(order.id)
        assert [e.description for e in visible] == [
            f"Order {order.order_number} created",
            "Customer notes updated",
        ]

    @pytest.mark.asyncio
    async def test_fraud_flag(self, services, place_order) -> None:
        """Fraud flags are critical, hidden and need follow-up."""
        order = await place_order()

        result = await services.status_engine.flag_for_fraud_review(
            order.id, "velocity check", actor="risk-bot"
        )

        assert result.value.is_flagged_for_fraud
        critical = await services.history.get_critical_events()
        assert len(critical) == 1
        assert critical[0].requires_follow_up
        assert not critical[0].is_customer_visible
