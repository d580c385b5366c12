"""State machines for domain entities.

Deterministic state machines that define valid state transitions for
checkout sessions, orders, stock reservations and payment confirmations.
State machines enforce business rules about what operations are valid
in each state.
"""

from enum import Enum

from orderflow.domain.exceptions import InvalidStateTransitionError


# ============================================================================
# Checkout Step Progression
# ============================================================================


class CheckoutStep(str, Enum):
    """Steps of the checkout flow, in order.

    Step order:
        CART ──► SHIPPING ──► BILLING ──► PAYMENT ──► CONFIRMATION

    A session may move one step forward (after the current step
    validates) or back to any earlier step.
    """

    CART = "cart"
    SHIPPING = "shipping"
    BILLING = "billing"
    PAYMENT = "payment"
    CONFIRMATION = "confirmation"

    @property
    def position(self) -> int:
        return _STEP_ORDER.index(self)

    def next(self) -> "CheckoutStep | None":
        """Get the step after this one, or None on the last step."""
        idx = self.position
        return _STEP_ORDER[idx + 1] if idx + 1 < len(_STEP_ORDER) else None

    def previous(self) -> "CheckoutStep | None":
        """Get the step before this one, or None on the first step."""
        idx = self.position
        return _STEP_ORDER[idx - 1] if idx > 0 else None


_STEP_ORDER: list[CheckoutStep] = list(CheckoutStep)


def is_valid_step_progression(current: CheckoutStep, target: CheckoutStep) -> bool:
    """Check whether a session may move from ``current`` to ``target``.

    Any earlier step is reachable. Forward moves may advance by exactly
    one step. Staying on the same step is not a progression.

    Args:
        current: Step the session is on.
        target: Requested step.

    Returns:
        True if the move is allowed by step order alone.
    """
    return target.position < current.position or target.position == current.position + 1


# ============================================================================
# Checkout Session State Machine
# ============================================================================


class CheckoutSessionStatus(str, Enum):
    """Checkout session lifecycle states.

    State diagram:
        ACTIVE ─────────────────────────────────► ABANDONED
          │  ▲                                       ▲
          │  │ completion failed                     │ expire
          ▼  │                                       │
        LOCKED ──────────────────────────────────────┘
          │
          │ order created
          ▼
        COMPLETED
    """

    ACTIVE = "active"
    LOCKED = "locked"
    COMPLETED = "completed"
    ABANDONED = "abandoned"

    def can_transition_to(self, target: "CheckoutSessionStatus") -> bool:
        return target in _SESSION_TRANSITIONS.get(self, set())

    def allowed_transitions(self) -> list["CheckoutSessionStatus"]:
        return sorted(_SESSION_TRANSITIONS.get(self, set()), key=lambda s: s.value)

    def is_terminal(self) -> bool:
        """Check if this is a terminal (final) state."""
        return len(_SESSION_TRANSITIONS.get(self, set())) == 0

    def is_open(self) -> bool:
        """Check if the session can still produce an order."""
        return self in {CheckoutSessionStatus.ACTIVE, CheckoutSessionStatus.LOCKED}


_SESSION_TRANSITIONS: dict[CheckoutSessionStatus, set[CheckoutSessionStatus]] = {
    CheckoutSessionStatus.ACTIVE: {CheckoutSessionStatus.LOCKED, CheckoutSessionStatus.ABANDONED},
    CheckoutSessionStatus.LOCKED: {
        CheckoutSessionStatus.COMPLETED,
        CheckoutSessionStatus.ACTIVE,
        CheckoutSessionStatus.ABANDONED,
    },
    CheckoutSessionStatus.COMPLETED: set(),  # Terminal state
    CheckoutSessionStatus.ABANDONED: set(),  # Terminal state
}


# ============================================================================
# Order State Machine
# ============================================================================


class OrderStatus(str, Enum):
    """Order lifecycle states.

    State diagram:
        PENDING ─────────────────────────────────────► CANCELLED
          │                                              ▲
          │ confirm                                      │
          ▼                                              │
        CONFIRMED ────────────────────────────────────►──┤
          │                                              │
          │ process                                      │
          ▼                                              │
        PROCESSING ───────────────────────────────────►──┘
          │
          │ ship
          ▼
        SHIPPED
          │
          │ deliver
          ▼
        DELIVERED ────────────────────────────────────► REFUNDED

    A non-terminal order whose payment has been collected may also be
    refunded directly.
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    def can_transition_to(
        self,
        target: "OrderStatus",
        payment_status: "OrderPaymentStatus | None" = None,
    ) -> bool:
        """Check if transition to target state is valid.

        Args:
            target: Target state to transition to.
            payment_status: Order payment status, which unlocks refunds.

        Returns:
            True if transition is valid.
        """
        if target in _ORDER_TRANSITIONS.get(self, set()):
            return True
        return (
            target == OrderStatus.REFUNDED
            and payment_status == OrderPaymentStatus.PAID
            and not self.is_terminal()
        )

    def allowed_transitions(
        self, payment_status: "OrderPaymentStatus | None" = None
    ) -> list["OrderStatus"]:
        return [s for s in OrderStatus if self.can_transition_to(s, payment_status)]

    def is_cancellable(self) -> bool:
        return OrderStatus.CANCELLED in _ORDER_TRANSITIONS.get(self, set())

    def is_terminal(self) -> bool:
        """Check if this is a terminal (final) state."""
        return len(_ORDER_TRANSITIONS.get(self, set())) == 0

    def is_in_progress(self) -> bool:
        """Check if fulfilment work may already have started."""
        return self in {OrderStatus.CONFIRMED, OrderStatus.PROCESSING}


_ORDER_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),  # Terminal state
    OrderStatus.REFUNDED: set(),  # Terminal state
}


class OrderPaymentStatus(str, Enum):
    """Payment state as seen from the order."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


# ============================================================================
# Stock Reservation State Machine
# ============================================================================


class ReservationStatus(str, Enum):
    """Stock reservation lifecycle states.

    State diagram:
        ACTIVE ──────────► RELEASED
          │  ▲
          │  │ restore (order rollback only)
          ▼  │
        CONSUMED
    """

    ACTIVE = "active"
    RELEASED = "released"
    CONSUMED = "consumed"

    def can_transition_to(self, target: "ReservationStatus") -> bool:
        return target in _RESERVATION_TRANSITIONS.get(self, set())

    def allowed_transitions(self) -> list["ReservationStatus"]:
        return sorted(_RESERVATION_TRANSITIONS.get(self, set()), key=lambda s: s.value)


_RESERVATION_TRANSITIONS: dict[ReservationStatus, set[ReservationStatus]] = {
    ReservationStatus.ACTIVE: {ReservationStatus.RELEASED, ReservationStatus.CONSUMED},
    ReservationStatus.CONSUMED: {ReservationStatus.ACTIVE},
    ReservationStatus.RELEASED: set(),  # Terminal state
}


# ============================================================================
# Payment Confirmation State Machine
# ============================================================================


class ConfirmationStatus(str, Enum):
    """Payment confirmation lifecycle states.

    State diagram:
        PENDING ───────────────┬───────────────► CANCELLED
          │   │   ▲   ▲        │                    ▲
          │   │   │   │ retry  │                    │
          │   │   │   └─────── FAILED               │
          │   │   │ retry                           │
          │   ▼   │                                 │
          │  REJECTED                               │
          │ confirm                                 │
          ▼                                         │
        CONFIRMED ──────────────────────────────────┘
          │
          │ collect
          ▼
        PAID ──────────► REFUNDED
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    FAILED = "failed"
    PAID = "paid"
    REFUNDED = "refunded"

    def can_transition_to(self, target: "ConfirmationStatus") -> bool:
        return target in _CONFIRMATION_TRANSITIONS.get(self, set())

    def allowed_transitions(self) -> list["ConfirmationStatus"]:
        return sorted(_CONFIRMATION_TRANSITIONS.get(self, set()), key=lambda s: s.value)

    def is_terminal(self) -> bool:
        """Check if this is a terminal (final) state."""
        return len(_CONFIRMATION_TRANSITIONS.get(self, set())) == 0

    def is_open(self) -> bool:
        """Check if this confirmation blocks creating another one."""
        return self in {ConfirmationStatus.PENDING, ConfirmationStatus.CONFIRMED}


_CONFIRMATION_TRANSITIONS: dict[ConfirmationStatus, set[ConfirmationStatus]] = {
    ConfirmationStatus.PENDING: {
        ConfirmationStatus.CONFIRMED,
        ConfirmationStatus.REJECTED,
        ConfirmationStatus.CANCELLED,
        ConfirmationStatus.FAILED,
    },
    ConfirmationStatus.CONFIRMED: {ConfirmationStatus.PAID, ConfirmationStatus.CANCELLED},
    ConfirmationStatus.PAID: {ConfirmationStatus.REFUNDED},
    ConfirmationStatus.REJECTED: {ConfirmationStatus.PENDING},
    ConfirmationStatus.FAILED: {ConfirmationStatus.PENDING},
    ConfirmationStatus.CANCELLED: set(),  # Terminal state
    ConfirmationStatus.REFUNDED: set(),  # Terminal state
}


# ============================================================================
# State Machine Validators
# ============================================================================


def validate_session_transition(
    session_id: str,
    current_status: CheckoutSessionStatus,
    target_status: CheckoutSessionStatus,
) -> None:
    """Validate and raise if checkout session state transition is invalid.

    Args:
        session_id: Session identifier for error message.
        current_status: Current session status.
        target_status: Target session status.

    Raises:
        InvalidStateTransitionError: If transition is not valid.
    """
    if not current_status.can_transition_to(target_status):
        raise InvalidStateTransitionError(
            entity_type="CheckoutSession",
            entity_id=session_id,
            current_state=current_status.value,
            target_state=target_status.value,
            allowed_transitions=[s.value for s in current_status.allowed_transitions()],
        )


def validate_order_transition(
    order_id: str,
    current_status: OrderStatus,
    target_status: OrderStatus,
    payment_status: OrderPaymentStatus | None = None,
) -> None:
    """Validate and raise if order state transition is invalid.

    Args:
        order_id: Order identifier for error message.
        current_status: Current order status.
        target_status: Target order status.
        payment_status: Current order payment status.

    Raises:
        InvalidStateTransitionError: If transition is not valid.
    """
    if not current_status.can_transition_to(target_status, payment_status):
        raise InvalidStateTransitionError(
            entity_type="Order",
            entity_id=order_id,
            current_state=current_status.value,
            target_state=target_status.value,
            allowed_transitions=[
                s.value for s in current_status.allowed_transitions(payment_status)
            ],
        )


def validate_reservation_transition(
    reservation_id: str,
    current_status: ReservationStatus,
    target_status: ReservationStatus,
) -> None:
    """Validate and raise if reservation state transition is invalid."""
    if not current_status.can_transition_to(target_status):
        raise InvalidStateTransitionError(
            entity_type="StockReservation",
            entity_id=reservation_id,
            current_state=current_status.value,
            target_state=target_status.value,
            allowed_transitions=[s.value for s in current_status.allowed_transitions()],
        )


def validate_confirmation_transition(
    confirmation_id: str,
    current_status: ConfirmationStatus,
    target_status: ConfirmationStatus,
) -> None:
    """Validate and raise if payment confirmation state transition is invalid."""
    if not current_status.can_transition_to(target_status):
        raise InvalidStateTransitionError(
            entity_type="PaymentConfirmation",
            entity_id=confirmation_id,
            current_state=current_status.value,
            target_state=target_status.value,
            allowed_transitions=[s.value for s in current_status.allowed_transitions()],
        )
