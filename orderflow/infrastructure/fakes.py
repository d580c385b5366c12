"""In-memory collaborator implementations.

Used for local runs and tests. They hold state in plain dicts and
record every call so callers can assert on side effects.
"""

from copy import deepcopy
from typing import Any

import structlog

from orderflow.domain.value_objects import Address
from orderflow.infrastructure.collaborators import CartSnapshot, PaymentRecord

logger = structlog.get_logger()


class InMemoryCartProvider:
    """Cart collaborator backed by a dict of snapshots."""

    def __init__(self) -> None:
        self._carts: dict[str, CartSnapshot] = {}
        self.cleared: list[str] = []

    def put(self, cart: CartSnapshot) -> None:
        self._carts[cart.cart_id] = deepcopy(cart)

    async def get_cart(self, cart_id: str) -> CartSnapshot | None:
        cart = self._carts.get(cart_id)
        return deepcopy(cart) if cart else None

    async def clear_cart(self, cart_id: str) -> None:
        cart = self._carts.get(cart_id)
        if cart:
            cart.items = []
            cart.subtotal_cents = cart.tax_cents = cart.shipping_cents = 0
            cart.discount_cents = cart.total_cents = 0
        self.cleared.append(cart_id)


class InMemoryPaymentProvider:
    """Payment collaborator backed by a dict of records."""

    def __init__(self) -> None:
        self._payments: dict[str, PaymentRecord] = {}
        self.status_updates: list[tuple[str, str, str | None]] = []

    def put(self, payment: PaymentRecord) -> None:
        self._payments[payment.payment_id] = deepcopy(payment)

    async def get_payment(self, payment_id: str) -> PaymentRecord | None:
        payment = self._payments.get(payment_id)
        return deepcopy(payment) if payment else None

    async def update_payment_status(
        self, payment_id: str, status: str, actor: str | None
    ) -> None:
        payment = self._payments.get(payment_id)
        if payment is None:
            raise KeyError(f"Payment {payment_id} not found")
        payment.status = status
        self.status_updates.append((payment_id, status, actor))


class RequiredFieldsAddressValidator:
    """Address validator that only checks required fields are filled.

    Real deployments plug in a postal-format validator; this one is the
    fallback used when none is configured.
    """

    async def validate(self, address: Address) -> list[str]:
        return [
            f"{name.replace('_', ' ').capitalize()} is required"
            for name in address.missing_fields()
        ]


class RecordingNotifier:
    """Notifier that keeps every notification in memory."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        logger.debug("Notification recorded", notification_event=event)
        self.sent.append((event, dict(payload)))

    def events(self) -> list[str]:
        return [event for event, _ in self.sent]
