"""Domain exceptions.

All domain-level errors that represent business rule violations.
Every error carries a stable ``code`` and an ``ErrorKind`` so the
application layer can report failures without inspecting messages.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Category of a domain failure.

    Callers use the kind to decide whether a retry makes sense:
    only CONFLICT failures are worth retrying as-is.
    """

    VALIDATION = "validation"
    INVARIANT = "invariant"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    INTERNAL = "internal"


class DomainError(Exception):
    """Base class for all domain exceptions.

    All domain errors should inherit from this class to allow
    catching domain-specific errors at the application layer.
    """

    code: str = "DOMAIN_ERROR"
    kind: ErrorKind = ErrorKind.INVARIANT

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize domain error.

        Args:
            message: Human-readable error message.
            details: Optional dictionary with additional error context.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(DomainError):
    """Raised when input is malformed or incomplete."""

    code = "VALIDATION_ERROR"
    kind = ErrorKind.VALIDATION


class NotFoundError(DomainError):
    """Raised when a referenced entity does not exist."""

    code = "NOT_FOUND"
    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity_type: str, entity_id: str) -> None:
        """Initialize not found error.

        Args:
            entity_type: Type of the missing entity.
            entity_id: Identifier that was looked up.
        """
        super().__init__(
            f"{entity_type} {entity_id} not found",
            details={"entity_type": entity_type, "entity_id": entity_id},
        )


class ConcurrencyConflictError(DomainError):
    """Raised when a concurrent writer got there first.

    Covers stale versions on compare-and-swap writes and double
    submissions. Safe to retry after re-reading current state.
    """

    code = "CONFLICT"
    kind = ErrorKind.CONFLICT

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        reason: str = "stale version",
    ) -> None:
        """Initialize conflict error.

        Args:
            entity_type: Type of entity being written.
            entity_id: ID of the entity.
            reason: What conflicted.
        """
        super().__init__(
            f"Conflict on {entity_type}({entity_id}): {reason}",
            details={"entity_type": entity_type, "entity_id": entity_id, "reason": reason},
        )


# ============================================================================
# State Machine Errors
# ============================================================================


class InvalidStateTransitionError(DomainError):
    """Raised when an invalid state transition is attempted.

    This error indicates that the requested operation cannot be performed
    in the current state of the entity.
    """

    code = "INVALID_TRANSITION"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        current_state: str,
        target_state: str,
        allowed_transitions: list[str] | None = None,
    ) -> None:
        """Initialize invalid state transition error.

        Args:
            entity_type: Type of entity (e.g., "Order", "PaymentConfirmation").
            entity_id: ID of the entity.
            current_state: Current state of the entity.
            target_state: Attempted target state.
            allowed_transitions: List of allowed target states from current state.
        """
        allowed = allowed_transitions or []
        message = (
            f"Invalid status transition for {entity_type}({entity_id}) "
            f"from '{current_state}' to '{target_state}'. "
            f"Allowed transitions: {allowed}"
        )
        super().__init__(
            message,
            details={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "current_state": current_state,
                "target_state": target_state,
                "allowed_transitions": allowed,
            },
        )


# ============================================================================
# Checkout Session Errors
# ============================================================================


class CheckoutError(DomainError):
    """Base class for checkout session errors."""

    pass


class InvalidStepProgressionError(CheckoutError):
    """Raised when a step change skips ahead in the checkout flow."""

    code = "INVALID_STEP_PROGRESSION"

    def __init__(self, session_id: str, current_step: str, target_step: str) -> None:
        """Initialize invalid step progression error.

        Args:
            session_id: ID of the checkout session.
            current_step: Step the session is on.
            target_step: Requested step.
        """
        super().__init__(
            f"Invalid step progression from '{current_step}' to '{target_step}'",
            details={
                "session_id": session_id,
                "current_step": current_step,
                "target_step": target_step,
            },
        )


class StepValidationError(CheckoutError):
    """Raised when the current step is incomplete and the user moves forward."""

    code = "STEP_INCOMPLETE"
    kind = ErrorKind.VALIDATION

    def __init__(self, session_id: str, step: str, errors: list[str]) -> None:
        """Initialize step validation error.

        Args:
            session_id: ID of the checkout session.
            step: Step that failed validation.
            errors: Validation messages.
        """
        super().__init__(
            f"Cannot proceed from '{step}': {'; '.join(errors)}",
            details={"session_id": session_id, "step": step, "errors": errors},
        )


class SessionNotActiveError(CheckoutError):
    """Raised when an operation needs a session in a different status."""

    code = "SESSION_NOT_ACTIVE"

    def __init__(self, session_id: str, current_status: str, operation: str) -> None:
        """Initialize session not active error.

        Args:
            session_id: ID of the checkout session.
            current_status: Current session status.
            operation: Operation that was attempted.
        """
        super().__init__(
            f"Cannot {operation} checkout session {session_id} in status '{current_status}'",
            details={
                "session_id": session_id,
                "current_status": current_status,
                "operation": operation,
            },
        )


class SessionLockedError(ConcurrencyConflictError):
    """Raised when a session is already being completed."""

    code = "SESSION_LOCKED"

    def __init__(self, session_id: str) -> None:
        """Initialize session locked error.

        Args:
            session_id: ID of the checkout session.
        """
        super().__init__(
            "CheckoutSession", session_id, "session is locked for completion"
        )


class SessionAlreadyCompletedError(ConcurrencyConflictError):
    """Raised when completion is requested for a session that already has an order."""

    code = "SESSION_COMPLETED"

    def __init__(self, session_id: str) -> None:
        super().__init__("CheckoutSession", session_id, "session is already completed")


class SessionExpiredError(CheckoutError):
    """Raised when a session is used after its expiry."""

    code = "SESSION_EXPIRED"

    def __init__(self, session_id: str, expired_at: str) -> None:
        """Initialize session expired error.

        Args:
            session_id: ID of the checkout session.
            expired_at: When it expired.
        """
        super().__init__(
            f"Checkout session {session_id} expired at {expired_at}",
            details={"session_id": session_id, "expired_at": expired_at},
        )


class CartEmptyError(CheckoutError):
    """Raised when trying to checkout an empty cart."""

    code = "CART_EMPTY"
    kind = ErrorKind.VALIDATION

    def __init__(self, cart_id: str) -> None:
        """Initialize cart empty error.

        Args:
            cart_id: ID of the cart.
        """
        super().__init__(
            f"Cannot checkout empty cart {cart_id}",
            details={"cart_id": cart_id},
        )


# ============================================================================
# Order Errors
# ============================================================================


class PriceMismatchError(DomainError):
    """Raised when the cart's stated totals disagree with recomputed ones."""

    code = "PRICE_MISMATCH"

    def __init__(self, field_name: str, stated_cents: int, computed_cents: int) -> None:
        """Initialize price mismatch error.

        Args:
            field_name: Which figure disagreed (e.g. "total").
            stated_cents: Amount the cart reported.
            computed_cents: Amount recomputed from line data.
        """
        super().__init__(
            f"Price mismatch on {field_name}: cart states {stated_cents}, "
            f"computed {computed_cents}",
            details={
                "field": field_name,
                "stated_cents": stated_cents,
                "computed_cents": computed_cents,
            },
        )


class OrderNumberGenerationError(DomainError):
    """Raised when no unique order number could be generated."""

    code = "ORDER_NUMBER_EXHAUSTED"
    kind = ErrorKind.INTERNAL

    def __init__(self, attempts: int) -> None:
        """Initialize order number generation error.

        Args:
            attempts: Number of attempts made.
        """
        super().__init__(
            f"Could not generate a unique order number after {attempts} attempts",
            details={"attempts": attempts},
        )


class OrderCreationError(DomainError):
    """Raised when a step after the order write fails and forces a rollback."""

    code = "ORDER_CREATION_FAILED"
    kind = ErrorKind.INTERNAL


class DuplicateOrderNumberError(ConcurrencyConflictError):
    """Raised by persistence when an order number is already taken."""

    def __init__(self, order_number: str) -> None:
        """Initialize duplicate order number error.

        Args:
            order_number: The colliding number.
        """
        super().__init__("Order", order_number, "order number already exists")
        self.order_number = order_number


# ============================================================================
# Inventory Errors
# ============================================================================


class InventoryError(DomainError):
    """Base class for inventory errors."""

    pass


class InsufficientInventoryError(InventoryError):
    """Raised when available stock cannot cover a request."""

    code = "INSUFFICIENT_INVENTORY"

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        """Initialize insufficient inventory error.

        Args:
            product_id: Product that ran short.
            requested: Quantity requested.
            available: Quantity available.
        """
        super().__init__(
            f"Insufficient inventory for product {product_id}: "
            f"requested {requested}, available {available}",
            details={
                "product_id": product_id,
                "requested": requested,
                "available": available,
            },
        )
        self.product_id = product_id


class InvalidQuantityError(InventoryError):
    """Raised when an invalid quantity is provided."""

    code = "INVALID_QUANTITY"
    kind = ErrorKind.VALIDATION

    def __init__(self, quantity: int, reason: str = "Quantity must be positive") -> None:
        """Initialize invalid quantity error.

        Args:
            quantity: The invalid quantity.
            reason: Why it is invalid.
        """
        super().__init__(
            f"Invalid quantity {quantity}: {reason}",
            details={"quantity": quantity, "reason": reason},
        )


class InventoryAlreadyInitializedError(InventoryError):
    """Raised when initializing a product that already has a record."""

    code = "INVENTORY_EXISTS"
    kind = ErrorKind.VALIDATION

    def __init__(self, product_id: str) -> None:
        """Initialize already initialized error.

        Args:
            product_id: Product with an existing record.
        """
        super().__init__(
            f"Inventory for product {product_id} already exists",
            details={"product_id": product_id},
        )


# ============================================================================
# Payment Confirmation Errors
# ============================================================================


class ConfirmationNotPendingError(DomainError):
    """Raised when confirming or rejecting a non-pending confirmation."""

    code = "CONFIRMATION_NOT_PENDING"

    def __init__(self, confirmation_id: str, current_status: str) -> None:
        """Initialize not pending error.

        Args:
            confirmation_id: ID of the confirmation.
            current_status: Its current status.
        """
        super().__init__(
            f"Payment confirmation {confirmation_id} is not in pending status "
            f"(current: '{current_status}')",
            details={"confirmation_id": confirmation_id, "current_status": current_status},
        )


class DuplicateConfirmationError(ConcurrencyConflictError):
    """Raised when a live confirmation already exists for a payment."""

    def __init__(self, payment_id: str, existing_id: str) -> None:
        """Initialize duplicate confirmation error.

        Args:
            payment_id: Payment being confirmed.
            existing_id: The live confirmation.
        """
        super().__init__(
            "PaymentConfirmation",
            existing_id,
            f"payment {payment_id} already has an open confirmation",
        )


# ============================================================================
# Money Errors
# ============================================================================


class CurrencyMismatchError(DomainError):
    """Raised when operating on money with different currencies."""

    code = "CURRENCY_MISMATCH"
    kind = ErrorKind.VALIDATION

    def __init__(self, currency1: str, currency2: str) -> None:
        """Initialize currency mismatch error.

        Args:
            currency1: First currency.
            currency2: Second currency.
        """
        super().__init__(
            f"Cannot operate on different currencies: {currency1} and {currency2}",
            details={"currency1": currency1, "currency2": currency2},
        )


class NegativeMoneyError(DomainError):
    """Raised when money amount would be negative."""

    code = "NEGATIVE_AMOUNT"
    kind = ErrorKind.VALIDATION

    def __init__(self, amount: int) -> None:
        """Initialize negative money error.

        Args:
            amount: The negative amount.
        """
        super().__init__(
            f"Money amount cannot be negative: {amount}",
            details={"amount": amount},
        )
