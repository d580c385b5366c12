"""Repository protocols.

Services depend on these rather than on a storage backend. The
in-memory repositories back tests and local runs; the SQL repositories
back the worker process.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, TypeVar

from orderflow.domain.base import AggregateRoot
from orderflow.domain.entities import (
    CheckoutSession,
    ConfirmationHistoryEntry,
    InventoryHistoryEntry,
    InventoryRecord,
    Order,
    OrderHistoryEntry,
    PaymentConfirmation,
    StockReservation,
)
from orderflow.domain.state_machines import OrderStatus, ReservationStatus

A = TypeVar("A", bound=AggregateRoot)
H = TypeVar("H")


class VersionedStore(Protocol[A]):
    """Aggregates written with compare-and-swap on ``version``."""

    entity_type: str

    async def add(self, item: A) -> A: ...

    async def get(self, item_id: str) -> A | None: ...

    async def save(self, item: A, expected_version: int) -> A: ...

    async def list_all(self) -> list[A]: ...


class AppendOnlyStore(Protocol[H]):
    async def append(self, entry: H) -> H: ...

    async def list_all(self) -> list[H]: ...


class CheckoutSessionRepository(VersionedStore[CheckoutSession], Protocol):
    async def get_by_token(self, session_token: str) -> CheckoutSession | None: ...

    async def list_expired(self, now: datetime) -> list[CheckoutSession]: ...


class OrderRepository(VersionedStore[Order], Protocol):
    async def create(self, order: Order) -> Order: ...

    async def number_exists(self, order_number: str) -> bool: ...

    async def get_by_number(self, order_number: str) -> Order | None: ...

    async def get_by_session(self, checkout_session_id: str) -> Order | None: ...

    async def delete(self, order_id: str) -> None: ...

    async def list_orders(
        self,
        status: OrderStatus | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Order], int]: ...

    async def list_confirmed_before(self, cutoff: datetime) -> list[Order]: ...


class InventoryRepository(VersionedStore[InventoryRecord], Protocol):
    pass


class ReservationRepository(VersionedStore[StockReservation], Protocol):
    async def find(
        self,
        reference: str | None = None,
        order_id: str | None = None,
        product_id: str | None = None,
        status: ReservationStatus | None = None,
    ) -> list[StockReservation]: ...

    async def list_expired(self, now: datetime) -> list[StockReservation]: ...


class InventoryHistoryRepository(AppendOnlyStore[InventoryHistoryEntry], Protocol):
    async def list_for_product(
        self, product_id: str, limit: int | None = None
    ) -> list[InventoryHistoryEntry]: ...


class PaymentConfirmationRepository(VersionedStore[PaymentConfirmation], Protocol):
    async def list_by_payment(self, payment_id: str) -> list[PaymentConfirmation]: ...


class ConfirmationHistoryRepository(AppendOnlyStore[ConfirmationHistoryEntry], Protocol):
    async def list_for_confirmation(
        self, confirmation_id: str
    ) -> list[ConfirmationHistoryEntry]: ...


class OrderHistoryRepository(AppendOnlyStore[OrderHistoryEntry], Protocol):
    async def list_for_order(self, order_id: str) -> list[OrderHistoryEntry]: ...


@dataclass
class Repositories:
    """One repository per aggregate, all on the same backend."""

    sessions: CheckoutSessionRepository
    orders: OrderRepository
    inventory: InventoryRepository
    reservations: ReservationRepository
    inventory_history: InventoryHistoryRepository
    confirmations: PaymentConfirmationRepository
    confirmation_history: ConfirmationHistoryRepository
    order_history: OrderHistoryRepository
