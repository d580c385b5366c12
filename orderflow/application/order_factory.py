"""Order factory.

Builds an order from a locked checkout session and its cart:
1. Validate the session and cart
2. Verify stated prices against recomputed totals
3. Reserve stock for every line
4. Generate a unique order number
5. Write the order and its items
6. Consume the reservations
7. Record the creation in order history
8. Complete the checkout session

Checks in steps 1 to 3 mutate nothing they do not undo themselves.
A failure in steps 4 to 8 triggers a compensating rollback that
deletes the order, returns consumed stock to its reservations and
releases them, and leaves the session in its prior status.
"""

import secrets
import string
import time
from collections.abc import Callable

import structlog

from orderflow.application.inventory_service import InventoryLedger
from orderflow.application.order_history_service import OrderHistoryRecorder
from orderflow.application.results import ServiceResult
from orderflow.domain.base import new_id
from orderflow.domain.entities import CheckoutSession, Order, OrderItem, StockReservation
from orderflow.domain.exceptions import (
    CartEmptyError,
    DomainError,
    DuplicateOrderNumberError,
    InvalidQuantityError,
    NotFoundError,
    OrderCreationError,
    OrderNumberGenerationError,
    PriceMismatchError,
    SessionNotActiveError,
    ValidationError,
)
from orderflow.domain.state_machines import CheckoutSessionStatus
from orderflow.domain.value_objects import Money
from orderflow.infrastructure.collaborators import CartProvider, CartSnapshot
from orderflow.infrastructure.config import Settings, settings as default_settings
from orderflow.infrastructure.stores import (
    CheckoutSessionRepository,
    OrderRepository,
)

logger = structlog.get_logger()

_ORDER_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def _cart_total(cart: CartSnapshot, subtotal: Money) -> Money:
    charges = Money(cart.tax_cents, cart.currency) + Money(cart.shipping_cents, cart.currency)
    return subtotal + charges - Money(cart.discount_cents, cart.currency)


def generate_order_number(prefix: str = "ORD") -> str:
    """Generate a human-readable order number.

    Format is the prefix, the last 8 digits of the millisecond
    timestamp and 4 random uppercase alphanumerics.
    """
    timestamp = str(int(time.time() * 1000))[-8:]
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(4))
    return f"{prefix}{timestamp}{suffix}"


class OrderFactory:
    """Creates orders from checkout sessions with all-or-nothing semantics."""

    def __init__(
        self,
        session_repo: CheckoutSessionRepository,
        order_repo: OrderRepository,
        cart_provider: CartProvider,
        ledger: InventoryLedger,
        history: OrderHistoryRecorder,
        settings: Settings | None = None,
        number_generator: Callable[[], str] | None = None,
    ) -> None:
        """Initialize factory.

        Args:
            session_repo: Checkout session repository.
            order_repo: Order repository.
            cart_provider: Cart collaborator.
            ledger: Inventory ledger.
            history: Order history recorder.
            settings: Application settings.
            number_generator: Order number source (defaults to
                ``generate_order_number`` with the configured prefix).
        """
        self.session_repo = session_repo
        self.order_repo = order_repo
        self.cart_provider = cart_provider
        self.ledger = ledger
        self.history = history
        self.settings = settings or default_settings
        self.number_generator = number_generator or (
            lambda: generate_order_number(self.settings.order_number_prefix)
        )

    async def create_order_from_cart(
        self,
        checkout_session_id: str,
        cart_id: str,
        actor: str | None = None,
    ) -> ServiceResult[Order]:
        """Create an order from a checkout session's cart.

        Args:
            checkout_session_id: Session being completed (active or locked).
            cart_id: Cart attached to the session.
            actor: Who is placing the order.

        Returns:
            ServiceResult with the created order.
        """
        log = logger.bind(checkout_session_id=checkout_session_id, cart_id=cart_id)

        try:
            session = await self._load_open_session(checkout_session_id, cart_id)
            cart = await self._load_cart(cart_id)
            self.verify_prices(cart)
            reservations = await self._reserve_lines(session, cart)
        except DomainError as e:
            log.info("Order creation rejected", error=e.message, error_code=e.code)
            return ServiceResult.fail(e)

        order: Order | None = None
        consumed: list[str] = []
        try:
            order = await self._create_order(session, cart)
            for reservation in reservations:
                (await self.ledger.consume(reservation.id, order.id, actor)).unwrap()
                consumed.append(reservation.id)
            await self.history.record_order_creation(order, actor)
            await self._complete_session(session, order)
        except Exception as e:
            await self._rollback(order, reservations, consumed)
            if isinstance(e, DomainError):
                log.warning("Order creation rolled back", error=e.message, error_code=e.code)
                return ServiceResult.fail(e)
            log.exception("Order creation failed unexpectedly")
            return ServiceResult.fail(OrderCreationError(f"Order creation failed: {e}"))

        log.info(
            "Order created",
            order_id=order.id,
            order_number=order.order_number,
            total_cents=order.total_cents,
        )

        warnings = []
        try:
            await self.cart_provider.clear_cart(cart_id)
        except Exception as e:
            log.warning("Failed to clear cart after order creation", error=str(e))
            warnings.append(f"Cart {cart_id} could not be cleared: {e}")
        return ServiceResult.ok(order, warnings)

    def verify_prices(self, cart: CartSnapshot) -> Money:
        """Recompute cart totals from line data and compare to stated totals.

        Args:
            cart: Cart snapshot.

        Returns:
            Recomputed total.

        Raises:
            InvalidQuantityError: If a line has a non-positive quantity.
            CurrencyMismatchError: If a line is priced in another currency than the cart.
            PriceMismatchError: If any figure is off by more than the tolerance.
        """
        tolerance = self.settings.price_tolerance_cents
        subtotal = Money.zero(cart.currency)
        for line in cart.items:
            if line.quantity <= 0:
                raise InvalidQuantityError(line.quantity)
            line_total = Money(line.unit_price_cents, line.currency) * line.quantity
            if abs(line_total.amount_cents - line.line_total_cents) > tolerance:
                raise PriceMismatchError(
                    f"line total for {line.product_id}",
                    line.line_total_cents,
                    line_total.amount_cents,
                )
            subtotal += line_total

        if abs(subtotal.amount_cents - cart.subtotal_cents) > tolerance:
            raise PriceMismatchError("subtotal", cart.subtotal_cents, subtotal.amount_cents)

        total = _cart_total(cart, subtotal)
        if abs(total.amount_cents - cart.total_cents) > tolerance:
            raise PriceMismatchError("total", cart.total_cents, total.amount_cents)
        return total

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _load_open_session(self, session_id: str, cart_id: str) -> CheckoutSession:
        session = await self.session_repo.get(session_id)
        if session is None:
            raise NotFoundError("CheckoutSession", session_id)
        if not session.status.is_open():
            raise SessionNotActiveError(session_id, session.status.value, "create an order from")
        if session.cart_id != cart_id:
            raise ValidationError(
                f"Cart {cart_id} does not belong to checkout session {session_id}",
                details={"session_id": session_id, "cart_id": cart_id},
            )
        return session

    async def _load_cart(self, cart_id: str) -> CartSnapshot:
        cart = await self.cart_provider.get_cart(cart_id)
        if cart is None:
            raise NotFoundError("Cart", cart_id)
        if cart.is_empty:
            raise CartEmptyError(cart_id)
        return cart

    async def _reserve_lines(
        self, session: CheckoutSession, cart: CartSnapshot
    ) -> list[StockReservation]:
        """Reserve every cart line, releasing earlier holds if one fails."""
        acquired: list[StockReservation] = []
        for line in cart.items:
            result = await self.ledger.reserve(
                line.product_id,
                line.quantity,
                reference=session.id,
                customer_id=session.user_id,
            )
            if not result.success:
                for reservation in acquired:
                    await self.ledger.release(reservation.id, "Order creation aborted")
                result.unwrap()
            acquired.append(result.value)
        return acquired

    async def _create_order(self, session: CheckoutSession, cart: CartSnapshot) -> Order:
        """Write the order under a fresh unique number."""
        attempts = self.settings.order_number_max_attempts
        for attempt in range(1, attempts + 1):
            order_number = self.number_generator()
            if await self.order_repo.number_exists(order_number):
                logger.warning("Order number collision", order_number=order_number, attempt=attempt)
                continue
            try:
                return await self.order_repo.create(self._build_order(order_number, session, cart))
            except DuplicateOrderNumberError:
                logger.warning("Order number collision", order_number=order_number, attempt=attempt)
        raise OrderNumberGenerationError(attempts)

    def _build_order(
        self, order_number: str, session: CheckoutSession, cart: CartSnapshot
    ) -> Order:
        items = [
            OrderItem(
                product_id=line.product_id,
                name=line.name,
                sku=line.sku,
                unit_price_cents=line.unit_price_cents,
                quantity=line.quantity,
                currency=line.currency,
            )
            for line in cart.items
        ]
        subtotal = sum(
            (Money(item.unit_price_cents, item.currency) * item.quantity for item in items),
            Money.zero(cart.currency),
        )
        return Order(
            id=new_id(),
            order_number=order_number,
            checkout_session_id=session.id,
            cart_id=cart.cart_id,
            user_id=session.user_id or cart.user_id,
            items=items,
            subtotal_cents=subtotal.amount_cents,
            tax_cents=cart.tax_cents,
            shipping_cents=cart.shipping_cents,
            discount_cents=cart.discount_cents,
            total_cents=_cart_total(cart, subtotal).amount_cents,
            currency=subtotal.currency,
            shipping_address=session.shipping_address,
            billing_address=session.billing_address,
            shipping_method=session.shipping_method,
            payment_method=session.payment_method,
            customer_notes=session.customer_notes,
        )

    async def _complete_session(self, session: CheckoutSession, order: Order) -> None:
        """Mark the session completed if nobody touched it since step 1.

        Raises:
            ConcurrencyConflictError: If the session changed meanwhile.
        """
        expected = session.version
        if session.status == CheckoutSessionStatus.ACTIVE:
            session.transition_to(CheckoutSessionStatus.LOCKED)
        session.transition_to(CheckoutSessionStatus.COMPLETED)
        session.order_id = order.id
        await self.session_repo.save(session, expected)

    async def _rollback(
        self,
        order: Order | None,
        reservations: list[StockReservation],
        consumed: list[str],
    ) -> None:
        """Undo a partially created order. Each step runs even if an earlier one fails."""
        reason = "Order creation rolled back"
        if order is not None:
            try:
                await self.order_repo.delete(order.id)
            except Exception as e:
                logger.error("Rollback failed to delete order", order_id=order.id, error=str(e))
        for reservation_id in consumed:
            result = await self.ledger.restore(reservation_id, reason)
            if not result.success:
                logger.error(
                    "Rollback failed to restore reservation",
                    reservation_id=reservation_id,
                    error=result.error,
                )
        for reservation in reservations:
            result = await self.ledger.release(reservation.id, reason)
            if not result.success:
                logger.error(
                    "Rollback failed to release reservation",
                    reservation_id=reservation.id,
                    error=result.error,
                )
