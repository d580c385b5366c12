"""Checkout application service.

Orchestrates the checkout session flow including:
- Creating sessions for non-empty carts
- Moving through the checkout steps with per-step validation
- Abandoning sessions and releasing their stock holds
- Completing sessions by handing them to the order factory
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta

import structlog

from orderflow.application.inventory_service import InventoryLedger
from orderflow.application.order_factory import OrderFactory
from orderflow.application.results import ServiceResult
from orderflow.domain.entities import CheckoutSession, InventorySource, Order
from orderflow.domain.exceptions import (
    CartEmptyError,
    DomainError,
    InvalidStepProgressionError,
    NotFoundError,
    SessionAlreadyCompletedError,
    SessionExpiredError,
    SessionLockedError,
    SessionNotActiveError,
    StepValidationError,
    ValidationError,
)
from orderflow.domain.state_machines import (
    CheckoutSessionStatus,
    CheckoutStep,
    is_valid_step_progression,
)
from orderflow.domain.value_objects import Address, PaymentMethod, ShippingMethod
from orderflow.infrastructure.collaborators import AddressValidator, CartProvider
from orderflow.infrastructure.config import Settings, settings as default_settings
from orderflow.infrastructure.stores import CheckoutSessionRepository

logger = structlog.get_logger()


# ============================================================================
# Request / Result Types
# ============================================================================


@dataclass
class SessionPatch:
    """Partial update of a checkout session. ``None`` leaves a field unchanged."""

    current_step: CheckoutStep | None = None
    shipping_address: Address | None = None
    billing_address: Address | None = None
    shipping_method: ShippingMethod | None = None
    payment_method: PaymentMethod | None = None
    customer_notes: str | None = None
    extend_expiry: timedelta | None = None

    def detail_changes(self) -> dict:
        return {
            name: value
            for name, value in (
                ("shipping_address", self.shipping_address),
                ("billing_address", self.billing_address),
                ("shipping_method", self.shipping_method),
                ("payment_method", self.payment_method),
                ("customer_notes", self.customer_notes),
            )
            if value is not None
        }


@dataclass
class StepValidation:
    """Result of validating one checkout step."""

    step: CheckoutStep
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    can_proceed: bool = False


@dataclass
class CheckoutAnalytics:
    """Session counts and funnel rates."""

    total_sessions: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    by_step: dict[str, int] = field(default_factory=dict)
    conversion_rate: float = 0.0
    abandonment_rate: float = 0.0


# ============================================================================
# Checkout Session Manager
# ============================================================================


class CheckoutSessionManager:
    """Application service for checkout session operations."""

    def __init__(
        self,
        session_repo: CheckoutSessionRepository,
        cart_provider: CartProvider,
        address_validator: AddressValidator,
        ledger: InventoryLedger,
        order_factory: OrderFactory,
        settings: Settings | None = None,
    ) -> None:
        """Initialize service.

        Args:
            session_repo: Checkout session repository.
            cart_provider: Cart collaborator.
            address_validator: Address validation collaborator.
            ledger: Inventory ledger, for releasing holds on abandon.
            order_factory: Builds the order on completion.
            settings: Application settings.
        """
        self.session_repo = session_repo
        self.cart_provider = cart_provider
        self.address_validator = address_validator
        self.ledger = ledger
        self.order_factory = order_factory
        self.settings = settings or default_settings

    async def create_session(
        self,
        cart_id: str,
        user_id: str | None = None,
        ttl: timedelta | None = None,
    ) -> ServiceResult[CheckoutSession]:
        """Start a checkout session for a cart.

        Args:
            cart_id: Cart to check out.
            user_id: Customer, if known.
            ttl: Session lifetime (defaults to the configured TTL).

        Returns:
            ServiceResult with the new session on the cart step.
        """
        try:
            cart = await self.cart_provider.get_cart(cart_id)
            if cart is None:
                raise NotFoundError("Cart", cart_id)
            if cart.is_empty:
                raise CartEmptyError(cart_id)

            ttl = ttl or timedelta(minutes=self.settings.checkout_session_ttl_minutes)
            session = CheckoutSession.create(cart_id, ttl, user_id=user_id or cart.user_id)
            session = await self.session_repo.add(session)
        except DomainError as e:
            return ServiceResult.fail(e)

        logger.info(
            "Checkout session created",
            session_id=session.id,
            cart_id=cart_id,
            expires_at=session.expires_at.isoformat(),
        )
        return ServiceResult.ok(session)

    async def get_session(self, session_id: str) -> ServiceResult[CheckoutSession]:
        try:
            return ServiceResult.ok(await self._get_session(session_id))
        except DomainError as e:
            return ServiceResult.fail(e)

    async def get_session_by_token(self, session_token: str) -> ServiceResult[CheckoutSession]:
        session = await self.session_repo.get_by_token(session_token)
        if session is None:
            return ServiceResult.fail(NotFoundError("CheckoutSession", "token"))
        return ServiceResult.ok(session)

    async def update_session(
        self, session_id: str, patch: SessionPatch
    ) -> ServiceResult[CheckoutSession]:
        """Apply a patch to an active session.

        A step change must satisfy the step-progression rule. Moving one
        step forward validates the step being left against the patched
        details, so a patch may supply an address and advance past it in
        one call. Nothing is written when the patch is rejected.

        Args:
            session_id: Session to update.
            patch: Fields to change.

        Returns:
            ServiceResult with the updated session.
        """
        try:
            session = await self._get_session(session_id)
            self._ensure_updatable(session, "update")
            expected = session.version

            changes = patch.detail_changes()
            if changes:
                session.update_details(**changes)
            if patch.current_step is not None and patch.current_step != session.current_step:
                await self._check_step_move(session, patch.current_step)
                session.move_to_step(patch.current_step)
            if patch.extend_expiry is not None:
                session.extend_expiry(patch.extend_expiry)

            session = await self.session_repo.save(session, expected)
        except DomainError as e:
            logger.info(
                "Checkout session update rejected",
                session_id=session_id,
                error=e.message,
                error_code=e.code,
            )
            return ServiceResult.fail(e)

        logger.info(
            "Checkout session updated",
            session_id=session_id,
            current_step=session.current_step.value,
            changed=sorted(changes),
        )
        return ServiceResult.ok(session)

    async def validate_step(
        self, session_id: str, step: CheckoutStep | None = None
    ) -> ServiceResult[StepValidation]:
        """Check whether a step's requirements are met.

        Args:
            session_id: Session to check.
            step: Step to validate (defaults to the current step).

        Returns:
            ServiceResult with the validation outcome.
        """
        try:
            session = await self._get_session(session_id)
        except DomainError as e:
            return ServiceResult.fail(e)

        step = step or session.current_step
        errors = await self._step_errors(session, step)
        open_for_changes = (
            session.status == CheckoutSessionStatus.ACTIVE and not session.is_expired()
        )
        return ServiceResult.ok(
            StepValidation(
                step=step,
                is_valid=not errors,
                errors=errors,
                can_proceed=not errors and open_for_changes,
            )
        )

    async def navigate_to_next_step(self, session_id: str) -> ServiceResult[CheckoutSession]:
        try:
            session = await self._get_session(session_id)
        except DomainError as e:
            return ServiceResult.fail(e)
        target = session.current_step.next()
        if target is None:
            return ServiceResult.fail(
                ValidationError(
                    f"Checkout session {session_id} is already on the last step",
                    details={"session_id": session_id, "step": session.current_step.value},
                )
            )
        return await self.update_session(session_id, SessionPatch(current_step=target))

    async def navigate_to_previous_step(self, session_id: str) -> ServiceResult[CheckoutSession]:
        try:
            session = await self._get_session(session_id)
        except DomainError as e:
            return ServiceResult.fail(e)
        target = session.current_step.previous()
        if target is None:
            return ServiceResult.fail(
                ValidationError(
                    f"Checkout session {session_id} is already on the first step",
                    details={"session_id": session_id, "step": session.current_step.value},
                )
            )
        return await self.update_session(session_id, SessionPatch(current_step=target))

    async def abandon_session(
        self, session_id: str, reason: str = "Abandoned by customer"
    ) -> ServiceResult[CheckoutSession]:
        """Abandon a session and release the stock it holds.

        Abandoning an already abandoned session is a no-op.

        Args:
            session_id: Session to abandon.
            reason: Why it was abandoned.

        Returns:
            ServiceResult with the abandoned session.
        """
        try:
            session = await self._get_session(session_id)
            if session.status == CheckoutSessionStatus.ABANDONED:
                logger.debug("Checkout session already abandoned", session_id=session_id)
                return ServiceResult.ok(session)
            if session.status == CheckoutSessionStatus.COMPLETED:
                raise SessionNotActiveError(session_id, session.status.value, "abandon")

            expected = session.version
            session.transition_to(CheckoutSessionStatus.ABANDONED, reason)
            session = await self.session_repo.save(session, expected)
        except DomainError as e:
            return ServiceResult.fail(e)

        warnings = []
        released = await self.ledger.release_for_reference(
            session_id, reason, InventorySource.SYSTEM
        )
        if not released.success:
            logger.warning(
                "Failed to release reservations for abandoned session",
                session_id=session_id,
                error=released.error,
            )
            warnings.append(f"Reservations could not be released: {released.error}")

        logger.info("Checkout session abandoned", session_id=session_id, reason=reason)
        return ServiceResult.ok(session, warnings)

    async def complete_session(
        self, session_id: str, actor: str | None = None
    ) -> ServiceResult[Order]:
        """Lock the session and build its order.

        The lock is a compare-and-swap on the session version, so of any
        number of concurrent calls exactly one reaches the order factory
        and the rest fail with a conflict. The locked session must then
        pass confirmation-step validation (non-empty cart, both addresses,
        shipping and payment method) or it is unlocked again.

        Args:
            session_id: Session to complete.
            actor: Who is placing the order.

        Returns:
            ServiceResult with the created order.
        """
        log = logger.bind(session_id=session_id)
        try:
            session = await self._get_session(session_id)
            if session.status == CheckoutSessionStatus.LOCKED:
                raise SessionLockedError(session_id)
            if session.status == CheckoutSessionStatus.COMPLETED:
                raise SessionAlreadyCompletedError(session_id)
            if session.status != CheckoutSessionStatus.ACTIVE:
                raise SessionNotActiveError(session_id, session.status.value, "complete")
            if session.is_expired():
                raise SessionExpiredError(session_id, session.expires_at.isoformat())

            expected = session.version
            session.transition_to(CheckoutSessionStatus.LOCKED)
            session = await self.session_repo.save(session, expected)
        except DomainError as e:
            log.info("Checkout completion rejected", error=e.message, error_code=e.code)
            return ServiceResult.fail(e)

        log.info("Checkout session locked for completion")
        errors = await self._step_errors(session, CheckoutStep.CONFIRMATION)
        if errors:
            await self._unlock(session_id)
            log.info("Checkout completion rejected", errors=errors)
            return ServiceResult.fail(
                StepValidationError(session_id, CheckoutStep.CONFIRMATION.value, errors)
            )

        result = await self.order_factory.create_order_from_cart(session.id, session.cart_id, actor)
        if not result.success:
            await self._unlock(session_id)
        return result

    async def get_analytics(self) -> CheckoutAnalytics:
        sessions = await self.session_repo.list_all()
        total = len(sessions)
        by_status = Counter(s.status.value for s in sessions)
        return CheckoutAnalytics(
            total_sessions=total,
            by_status=dict(by_status),
            by_step=dict(Counter(s.current_step.value for s in sessions)),
            conversion_rate=(
                by_status[CheckoutSessionStatus.COMPLETED.value] / total if total else 0.0
            ),
            abandonment_rate=(
                by_status[CheckoutSessionStatus.ABANDONED.value] / total if total else 0.0
            ),
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _get_session(self, session_id: str) -> CheckoutSession:
        session = await self.session_repo.get(session_id)
        if session is None:
            raise NotFoundError("CheckoutSession", session_id)
        return session

    def _ensure_updatable(self, session: CheckoutSession, operation: str) -> None:
        if session.status != CheckoutSessionStatus.ACTIVE:
            raise SessionNotActiveError(session.id, session.status.value, operation)
        if session.is_expired():
            raise SessionExpiredError(session.id, session.expires_at.isoformat())

    async def _check_step_move(self, session: CheckoutSession, target: CheckoutStep) -> None:
        """Reject a step change the progression rule or step validation forbids.

        Raises:
            InvalidStepProgressionError: If the move skips ahead.
            StepValidationError: If the step being left is incomplete.
        """
        current = session.current_step
        if not is_valid_step_progression(current, target):
            raise InvalidStepProgressionError(session.id, current.value, target.value)
        if target.position > current.position:
            errors = await self._step_errors(session, current)
            if errors:
                raise StepValidationError(session.id, current.value, errors)

    async def _step_errors(self, session: CheckoutSession, step: CheckoutStep) -> list[str]:
        if step == CheckoutStep.CART:
            return await self._cart_errors(session)
        if step == CheckoutStep.SHIPPING:
            return await self._address_errors(session.shipping_address, "Shipping")
        if step == CheckoutStep.BILLING:
            return await self._address_errors(session.billing_address, "Billing")
        if step == CheckoutStep.PAYMENT:
            return self._payment_errors(session)

        errors = await self._cart_errors(session)
        errors += await self._address_errors(session.shipping_address, "Shipping")
        errors += await self._address_errors(session.billing_address, "Billing")
        errors += self._payment_errors(session)
        if session.shipping_method is None:
            errors.append("Shipping method is required")
        return errors

    async def _cart_errors(self, session: CheckoutSession) -> list[str]:
        cart = await self.cart_provider.get_cart(session.cart_id)
        if cart is None:
            return [f"Cart {session.cart_id} not found"]
        if cart.is_empty:
            return ["Cart is empty"]
        return []

    async def _address_errors(self, address: Address | None, label: str) -> list[str]:
        if address is None:
            return [f"{label} address is required"]
        missing = address.missing_fields()
        if missing:
            return [f"{label} address {name.replace('_', ' ')} is required" for name in missing]
        errors = await self.address_validator.validate(address)
        return [f"{label} address: {error}" for error in errors]

    def _payment_errors(self, session: CheckoutSession) -> list[str]:
        if session.payment_method is None:
            return ["Payment method is required"]
        return []

    async def _unlock(self, session_id: str) -> None:
        """Put a session locked for a failed completion back to active."""
        session = await self.session_repo.get(session_id)
        if session is None or session.status != CheckoutSessionStatus.LOCKED:
            return
        try:
            expected = session.version
            session.transition_to(CheckoutSessionStatus.ACTIVE)
            await self.session_repo.save(session, expected)
        except DomainError as e:
            logger.error("Failed to unlock checkout session", session_id=session_id, error=e.message)
            return
        logger.info("Checkout session unlocked after failed completion", session_id=session_id)
