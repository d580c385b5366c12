"""Tests for domain state machines."""

import itertools

import pytest

from orderflow.domain import (
    CheckoutSessionStatus,
    CheckoutStep,
    ConfirmationStatus,
    OrderPaymentStatus,
    OrderStatus,
    ReservationStatus,
    is_valid_step_progression,
)
from orderflow.domain.exceptions import InvalidStateTransitionError
from orderflow.domain.state_machines import (
    validate_confirmation_transition,
    validate_order_transition,
    validate_reservation_transition,
    validate_session_transition,
)

STEPS = list(CheckoutStep)


class TestCheckoutStep:
    """Tests for checkout step ordering and progression."""

    def test_steps_are_totally_ordered(self) -> None:
        """Steps run cart, shipping, billing, payment, confirmation."""
        assert [s.value for s in STEPS] == [
            "cart",
            "shipping",
            "billing",
            "payment",
            "confirmation",
        ]
        assert [s.position for s in STEPS] == [0, 1, 2, 3, 4]

    def test_next_and_previous(self) -> None:
        """next() and previous() walk the order and stop at the ends."""
        assert CheckoutStep.CART.next() == CheckoutStep.SHIPPING
        assert CheckoutStep.CONFIRMATION.next() is None
        assert CheckoutStep.BILLING.previous() == CheckoutStep.SHIPPING
        assert CheckoutStep.CART.previous() is None

    @pytest.mark.parametrize(("current", "target"), list(itertools.product(STEPS, STEPS)))
    def test_progression_matches_rule(self, current: CheckoutStep, target: CheckoutStep) -> None:
        """A move is allowed iff it goes back, or exactly one step forward."""
        expected = (
            target.position < current.position or target.position == current.position + 1
        )
        assert is_valid_step_progression(current, target) is expected

    def test_skipping_forward_is_rejected(self) -> None:
        """cart to billing skips shipping."""
        assert not is_valid_step_progression(CheckoutStep.CART, CheckoutStep.BILLING)
        assert not is_valid_step_progression(CheckoutStep.CART, CheckoutStep.CONFIRMATION)

    def test_backward_jumps_are_allowed(self) -> None:
        """Any earlier step is reachable."""
        assert is_valid_step_progression(CheckoutStep.CONFIRMATION, CheckoutStep.CART)

    def test_same_step_is_not_a_progression(self) -> None:
        """Staying put is not a progression."""
        assert not is_valid_step_progression(CheckoutStep.PAYMENT, CheckoutStep.PAYMENT)


class TestCheckoutSessionStatus:
    """Tests for CheckoutSessionStatus state machine."""

    def test_active_can_lock_or_abandon(self) -> None:
        """ACTIVE can move to LOCKED or ABANDONED."""
        assert CheckoutSessionStatus.ACTIVE.can_transition_to(CheckoutSessionStatus.LOCKED)
        assert CheckoutSessionStatus.ACTIVE.can_transition_to(CheckoutSessionStatus.ABANDONED)

    def test_active_cannot_complete_directly(self) -> None:
        """Completion always goes through LOCKED."""
        assert not CheckoutSessionStatus.ACTIVE.can_transition_to(
            CheckoutSessionStatus.COMPLETED
        )

    def test_locked_can_return_to_active(self) -> None:
        """A failed completion unlocks the session."""
        assert CheckoutSessionStatus.LOCKED.can_transition_to(CheckoutSessionStatus.ACTIVE)

    def test_terminal_states(self) -> None:
        """COMPLETED and ABANDONED are terminal."""
        assert CheckoutSessionStatus.COMPLETED.is_terminal()
        assert CheckoutSessionStatus.ABANDONED.is_terminal()
        assert not CheckoutSessionStatus.LOCKED.is_terminal()

    def test_open_states(self) -> None:
        """Only ACTIVE and LOCKED sessions are open."""
        assert CheckoutSessionStatus.ACTIVE.is_open()
        assert CheckoutSessionStatus.LOCKED.is_open()
        assert not CheckoutSessionStatus.COMPLETED.is_open()

    def test_validate_raises_for_invalid(self) -> None:
        """validate_session_transition raises on a missing edge."""
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            validate_session_transition(
                "sess-1", CheckoutSessionStatus.COMPLETED, CheckoutSessionStatus.ACTIVE
            )
        assert exc_info.value.details["entity_type"] == "CheckoutSession"


class TestOrderStatus:
    """Tests for OrderStatus state machine."""

    def test_happy_path(self) -> None:
        """pending, confirmed, processing, shipped, delivered is a valid path."""
        path = [
            OrderStatus.PENDING,
            OrderStatus.CONFIRMED,
            OrderStatus.PROCESSING,
            OrderStatus.SHIPPED,
            OrderStatus.DELIVERED,
        ]
        for current, target in zip(path, path[1:]):
            assert current.can_transition_to(target)

    def test_delivered_cannot_go_back_to_pending(self) -> None:
        """delivered to pending is rejected as an invalid status transition."""
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            validate_order_transition("ord-1", OrderStatus.DELIVERED, OrderStatus.PENDING)
        assert "Invalid status transition" in exc_info.value.message
        assert exc_info.value.code == "INVALID_TRANSITION"

    def test_shipped_cannot_be_cancelled(self) -> None:
        """Once shipped an order can no longer be cancelled."""
        assert not OrderStatus.SHIPPED.is_cancellable()
        assert not OrderStatus.SHIPPED.can_transition_to(OrderStatus.CANCELLED)

    def test_cancellable_states(self) -> None:
        """pending, confirmed and processing can be cancelled."""
        for status in (OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING):
            assert status.is_cancellable()

    def test_delivered_can_be_refunded(self) -> None:
        """DELIVERED has a direct edge to REFUNDED."""
        assert OrderStatus.DELIVERED.can_transition_to(OrderStatus.REFUNDED)

    def test_refund_of_paid_order_in_progress(self) -> None:
        """A paid, non-terminal order may be refunded from any state."""
        assert not OrderStatus.PROCESSING.can_transition_to(OrderStatus.REFUNDED)
        assert OrderStatus.PROCESSING.can_transition_to(
            OrderStatus.REFUNDED, OrderPaymentStatus.PAID
        )
        assert not OrderStatus.PROCESSING.can_transition_to(
            OrderStatus.REFUNDED, OrderPaymentStatus.CONFIRMED
        )

    def test_terminal_states_stay_terminal_even_when_paid(self) -> None:
        """Cancelled orders cannot be refunded through the payment shortcut."""
        assert OrderStatus.CANCELLED.is_terminal()
        assert not OrderStatus.CANCELLED.can_transition_to(
            OrderStatus.REFUNDED, OrderPaymentStatus.PAID
        )

    def test_in_progress_states(self) -> None:
        """Confirmed and processing orders are in progress."""
        assert OrderStatus.CONFIRMED.is_in_progress()
        assert OrderStatus.PROCESSING.is_in_progress()
        assert not OrderStatus.PENDING.is_in_progress()


class TestReservationStatus:
    """Tests for ReservationStatus state machine."""

    def test_active_can_be_released_or_consumed(self) -> None:
        """ACTIVE can be RELEASED or CONSUMED."""
        assert ReservationStatus.ACTIVE.can_transition_to(ReservationStatus.RELEASED)
        assert ReservationStatus.ACTIVE.can_transition_to(ReservationStatus.CONSUMED)

    def test_consumed_can_be_restored(self) -> None:
        """CONSUMED can return to ACTIVE for order rollback."""
        assert ReservationStatus.CONSUMED.can_transition_to(ReservationStatus.ACTIVE)

    def test_released_is_final(self) -> None:
        """RELEASED has no outgoing edges."""
        assert ReservationStatus.RELEASED.allowed_transitions() == []
        with pytest.raises(InvalidStateTransitionError):
            validate_reservation_transition(
                "res-1", ReservationStatus.RELEASED, ReservationStatus.CONSUMED
            )


class TestConfirmationStatus:
    """Tests for ConfirmationStatus state machine."""

    def test_pending_outcomes(self) -> None:
        """PENDING can be confirmed, rejected, cancelled or failed."""
        assert ConfirmationStatus.PENDING.allowed_transitions() == [
            ConfirmationStatus.CANCELLED,
            ConfirmationStatus.CONFIRMED,
            ConfirmationStatus.FAILED,
            ConfirmationStatus.REJECTED,
        ]

    def test_rejected_and_failed_can_retry(self) -> None:
        """REJECTED and FAILED go back to PENDING."""
        assert ConfirmationStatus.REJECTED.can_transition_to(ConfirmationStatus.PENDING)
        assert ConfirmationStatus.FAILED.can_transition_to(ConfirmationStatus.PENDING)

    def test_paid_can_only_be_refunded(self) -> None:
        """PAID only moves to REFUNDED."""
        assert ConfirmationStatus.PAID.allowed_transitions() == [ConfirmationStatus.REFUNDED]

    def test_confirmed_cannot_be_rejected(self) -> None:
        """A confirmed payment cannot be rejected afterwards."""
        with pytest.raises(InvalidStateTransitionError):
            validate_confirmation_transition(
                "conf-1", ConfirmationStatus.CONFIRMED, ConfirmationStatus.REJECTED
            )

    def test_open_states(self) -> None:
        """Pending and confirmed confirmations block new ones."""
        assert ConfirmationStatus.PENDING.is_open()
        assert ConfirmationStatus.CONFIRMED.is_open()
        assert not ConfirmationStatus.REJECTED.is_open()
        assert not ConfirmationStatus.PAID.is_open()
