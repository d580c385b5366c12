"""Shared fixtures: an in-memory service graph plus cart and stock helpers."""

from collections.abc import Awaitable, Callable

import pytest

from orderflow.application.checkout_service import SessionPatch
from orderflow.bootstrap import Services, build_services
from orderflow.domain import (
    Address,
    CheckoutSession,
    CheckoutStep,
    Order,
    PaymentMethod,
    ShippingMethod,
)
from orderflow.infrastructure.collaborators import CartLine, CartSnapshot, PaymentRecord
from orderflow.infrastructure.config import Settings


@pytest.fixture
def settings() -> Settings:
    """Settings with defaults only, ignoring any local .env file."""
    return Settings(_env_file=None)


@pytest.fixture
def services(settings: Settings) -> Services:
    """Fresh in-memory service graph."""
    return build_services(settings)


@pytest.fixture
def address() -> Address:
    return Address(
        first_name="Ada",
        last_name="Lovelace",
        address1="12 Analytical Row",
        city="London",
        state="LDN",
        postal_code="N1 9GU",
        country="gb",
        phone="+44 20 7946 0000",
    )


@pytest.fixture
def make_cart(services: Services) -> Callable[..., CartSnapshot]:
    """Register a cart with the in-memory cart provider.

    The default cart is 2 x 50.00 + 1 x 20.00 with 5.00 tax and 5.00
    shipping, stated total 130.00.
    """

    def _make(
        cart_id: str = "cart-1",
        lines: list[tuple[str, int, int]] | None = None,
        tax_cents: int = 500,
        shipping_cents: int = 500,
        discount_cents: int = 0,
        total_cents: int | None = None,
        user_id: str | None = "user-1",
    ) -> CartSnapshot:
        lines = lines if lines is not None else [("prod-a", 5000, 2), ("prod-b", 2000, 1)]
        items = [
            CartLine(
                product_id=product_id,
                name=f"Product {product_id}",
                unit_price_cents=price,
                quantity=quantity,
                line_total_cents=price * quantity,
            )
            for product_id, price, quantity in lines
        ]
        subtotal = sum(item.line_total_cents for item in items)
        cart = CartSnapshot(
            cart_id=cart_id,
            items=items,
            subtotal_cents=subtotal,
            tax_cents=tax_cents,
            shipping_cents=shipping_cents,
            discount_cents=discount_cents,
            total_cents=(
                total_cents
                if total_cents is not None
                else subtotal + tax_cents + shipping_cents - discount_cents
            ),
            user_id=user_id,
        )
        services.cart_provider.put(cart)
        return cart

    return _make


@pytest.fixture
def stock(services: Services) -> Callable[..., Awaitable[None]]:
    """Initialize inventory for several products at once."""

    async def _stock(**quantities: int) -> None:
        for product_id, quantity in quantities.items():
            (await services.ledger.initialize(product_id.replace("_", "-"), quantity)).unwrap()

    return _stock


@pytest.fixture
def ready_session(
    services: Services, address: Address
) -> Callable[..., Awaitable[CheckoutSession]]:
    """Create a session with every checkout detail filled in, on the cart step."""

    async def _ready(cart_id: str = "cart-1") -> CheckoutSession:
        session = (await services.checkout.create_session(cart_id)).unwrap()
        patch = SessionPatch(
            shipping_address=address,
            billing_address=address,
            shipping_method=ShippingMethod(id="std", name="Standard", cost_cents=500, carrier="DHL"),
            payment_method=PaymentMethod(code="card", name="Card"),
        )
        return (await services.checkout.update_session(session.id, patch)).unwrap()

    return _ready


@pytest.fixture
def place_order(
    services: Services,
    make_cart: Callable[..., CartSnapshot],
    stock: Callable[..., Awaitable[None]],
    ready_session: Callable[..., Awaitable[CheckoutSession]],
) -> Callable[..., Awaitable[Order]]:
    """Stock the default products and check out the cart step by step."""

    async def _place(cart_id: str = "cart-1") -> Order:
        if (await services.ledger.get_record("prod-a")).value is None:
            await stock(prod_a=10, prod_b=10)
        make_cart(cart_id)
        session = await ready_session(cart_id)
        while session.current_step != CheckoutStep.CONFIRMATION:
            session = (await services.checkout.navigate_to_next_step(session.id)).unwrap()
        return (await services.checkout.complete_session(session.id, actor="user-1")).unwrap()

    return _place


@pytest.fixture
def make_payment(services: Services) -> Callable[..., PaymentRecord]:
    """Register a payment with the in-memory payment provider."""

    def _make(
        payment_id: str = "pay-1",
        amount_cents: int = 13000,
        method: str = "card",
        order_id: str | None = None,
        trust_score: int | None = None,
    ) -> PaymentRecord:
        payment = PaymentRecord(
            payment_id=payment_id,
            amount_cents=amount_cents,
            status="pending",
            method=method,
            order_id=order_id,
            user_id="user-1",
            trust_score=trust_score,
        )
        services.payment_provider.put(payment)
        return payment

    return _make
