"""Interfaces to external collaborators.

The core talks to carts, payments, address validation and notification
delivery only through these protocols. Each service receives the
implementations it needs at construction time.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol

from orderflow.domain.value_objects import Address


# ============================================================================
# Collaborator Data
# ============================================================================


@dataclass
class CartLine:
    """Line in a cart as reported by the cart collaborator."""

    product_id: str
    name: str
    unit_price_cents: int
    quantity: int
    line_total_cents: int
    sku: str | None = None
    currency: str = "USD"

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "CartLine":
        """Create from cart API response data."""
        unit_price = data.get("unit_price", {})
        line_total = data.get("line_total", {})
        quantity = data.get("quantity", 1)
        unit_cents = unit_price.get("amount", 0)
        return cls(
            product_id=data["product_id"],
            name=data.get("name", ""),
            unit_price_cents=unit_cents,
            quantity=quantity,
            line_total_cents=line_total.get("amount", unit_cents * quantity),
            sku=data.get("sku"),
            currency=unit_price.get("currency", "USD"),
        )


@dataclass
class CartSnapshot:
    """Cart contents and stated totals at the time of the call."""

    cart_id: str
    items: list[CartLine] = field(default_factory=list)
    subtotal_cents: int = 0
    tax_cents: int = 0
    shipping_cents: int = 0
    discount_cents: int = 0
    total_cents: int = 0
    currency: str = "USD"
    user_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.items

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "CartSnapshot":
        """Create from cart API response data."""

        def amount(key: str) -> int:
            return data.get(key, {}).get("amount", 0)

        return cls(
            cart_id=data["id"],
            items=[CartLine.from_api_response(i) for i in data.get("items", [])],
            subtotal_cents=amount("subtotal"),
            tax_cents=amount("tax"),
            shipping_cents=amount("shipping"),
            discount_cents=amount("discount"),
            total_cents=amount("total"),
            currency=data.get("total", {}).get("currency", "USD"),
            user_id=data.get("user_id"),
        )


@dataclass
class PaymentRecord:
    """Payment as recorded by the payment collaborator."""

    payment_id: str
    amount_cents: int
    status: str
    method: str
    currency: str = "USD"
    order_id: str | None = None
    user_id: str | None = None
    trust_score: int | None = None

    @property
    def is_cash(self) -> bool:
        return self.method.lower() in {"cash", "cash_on_delivery", "cod"}

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "PaymentRecord":
        """Create from payment API response data."""
        amount = data.get("amount", {})
        user = data.get("user") or {}
        return cls(
            payment_id=data["id"],
            amount_cents=amount.get("amount", 0),
            currency=amount.get("currency", "USD"),
            status=data.get("status", "pending"),
            method=data.get("method", ""),
            order_id=data.get("order_id"),
            user_id=user.get("id"),
            trust_score=user.get("trust_score"),
        )


# ============================================================================
# Collaborator Protocols
# ============================================================================


class CartProvider(Protocol):
    """Read access to carts plus clearing after checkout."""

    async def get_cart(self, cart_id: str) -> CartSnapshot | None: ...

    async def clear_cart(self, cart_id: str) -> None: ...


class AddressValidator(Protocol):
    """Checks an address and returns human-readable problems."""

    async def validate(self, address: Address) -> list[str]: ...


class PaymentProvider(Protocol):
    """Access to externally recorded payments."""

    async def get_payment(self, payment_id: str) -> PaymentRecord | None: ...

    async def update_payment_status(
        self, payment_id: str, status: str, actor: str | None
    ) -> None: ...


class Notifier(Protocol):
    """Fire-and-forget notification delivery."""

    async def notify(self, event: str, payload: dict[str, Any]) -> None: ...
