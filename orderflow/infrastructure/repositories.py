"""In-memory repositories.

Each repository stores deep copies, so callers never share mutable
state with the store and must write changes back explicitly. Aggregate
writes are compare-and-swap on ``version``: a save whose expected
version no longer matches the stored one raises
ConcurrencyConflictError. History repositories only append.

The SQL repositories in ``sql_repositories`` keep the same contract.
"""

from copy import deepcopy
from datetime import datetime
from typing import Generic, TypeVar

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
from orderflow.domain.exceptions import (
    ConcurrencyConflictError,
    DuplicateOrderNumberError,
    NotFoundError,
)
from orderflow.domain.state_machines import OrderStatus, ReservationStatus
from orderflow.infrastructure.stores import Repositories

A = TypeVar("A", bound=AggregateRoot)
H = TypeVar("H")


# ============================================================================
# Base Stores
# ============================================================================


class VersionedRepository(Generic[A]):
    """Keyed store of aggregates with optimistic concurrency."""

    entity_type = "Aggregate"

    def __init__(self) -> None:
        self._items: dict[str, A] = {}

    async def add(self, item: A) -> A:
        """Insert a new aggregate.

        Raises:
            ConcurrencyConflictError: If the id is already taken.
        """
        if item.id in self._items:
            raise ConcurrencyConflictError(self.entity_type, item.id, "already exists")
        self._items[item.id] = deepcopy(item)
        return deepcopy(item)

    async def get(self, item_id: str) -> A | None:
        item = self._items.get(item_id)
        return deepcopy(item) if item is not None else None

    async def save(self, item: A, expected_version: int) -> A:
        """Write an aggregate if nobody else wrote it since it was read.

        Args:
            item: Modified aggregate.
            expected_version: Version the caller read before modifying.

        Returns:
            Copy of the stored aggregate.

        Raises:
            NotFoundError: If the aggregate does not exist.
            ConcurrencyConflictError: If the stored version moved on.
        """
        current = self._items.get(item.id)
        if current is None:
            raise NotFoundError(self.entity_type, item.id)
        if current.version != expected_version:
            raise ConcurrencyConflictError(
                self.entity_type,
                item.id,
                f"expected version {expected_version}, found {current.version}",
            )
        self._items[item.id] = deepcopy(item)
        return deepcopy(item)

    async def list_all(self) -> list[A]:
        return [deepcopy(item) for item in self._items.values()]


class AppendOnlyRepository(Generic[H]):
    """Append-only log. Entries can be read but never updated or removed."""

    def __init__(self) -> None:
        self._entries: list[H] = []

    async def append(self, entry: H) -> H:
        self._entries.append(deepcopy(entry))
        return entry

    async def list_all(self) -> list[H]:
        return [deepcopy(e) for e in self._entries]


# ============================================================================
# Checkout Sessions
# ============================================================================


class InMemoryCheckoutSessionRepository(VersionedRepository[CheckoutSession]):
    """In-memory store of checkout sessions."""

    entity_type = "CheckoutSession"

    async def get_by_token(self, session_token: str) -> CheckoutSession | None:
        for session in self._items.values():
            if session.session_token == session_token:
                return deepcopy(session)
        return None

    async def list_expired(self, now: datetime) -> list[CheckoutSession]:
        """Get open sessions whose expiry has passed."""
        return [
            deepcopy(s)
            for s in self._items.values()
            if s.status.is_open() and s.expires_at <= now
        ]


# ============================================================================
# Orders
# ============================================================================


class InMemoryOrderRepository(VersionedRepository[Order]):
    """In-memory store of orders and their items.

    An order and its items are one document here, so ``create`` writes
    both atomically.
    """

    entity_type = "Order"

    def __init__(self) -> None:
        super().__init__()
        self._by_number: dict[str, str] = {}

    async def create(self, order: Order) -> Order:
        """Insert an order with its items.

        Raises:
            DuplicateOrderNumberError: If the order number is taken.
            ConcurrencyConflictError: If the id is taken.
        """
        if order.order_number in self._by_number:
            raise DuplicateOrderNumberError(order.order_number)
        stored = await self.add(order)
        self._by_number[order.order_number] = order.id
        return stored

    async def number_exists(self, order_number: str) -> bool:
        return order_number in self._by_number

    async def get_by_number(self, order_number: str) -> Order | None:
        order_id = self._by_number.get(order_number)
        return await self.get(order_id) if order_id else None

    async def get_by_session(self, checkout_session_id: str) -> Order | None:
        for order in self._items.values():
            if order.checkout_session_id == checkout_session_id:
                return deepcopy(order)
        return None

    async def delete(self, order_id: str) -> None:
        """Remove a partially created order during rollback."""
        order = self._items.pop(order_id, None)
        if order is not None:
            self._by_number.pop(order.order_number, None)

    async def list_orders(
        self,
        status: OrderStatus | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Order], int]:
        """List orders with pagination and filtering."""
        orders = list(self._items.values())
        if status:
            orders = [o for o in orders if o.status == status]
        orders.sort(key=lambda o: o.created_at, reverse=True)

        total = len(orders)
        start = (page - 1) * page_size
        return [deepcopy(o) for o in orders[start : start + page_size]], total

    async def list_confirmed_before(self, cutoff: datetime) -> list[Order]:
        return [
            deepcopy(o)
            for o in self._items.values()
            if o.status == OrderStatus.CONFIRMED
            and o.confirmed_at is not None
            and o.confirmed_at <= cutoff
        ]


# ============================================================================
# Inventory
# ============================================================================


class InMemoryInventoryRepository(VersionedRepository[InventoryRecord]):
    """In-memory store of inventory records keyed by product id."""

    entity_type = "InventoryRecord"


class InMemoryReservationRepository(VersionedRepository[StockReservation]):
    """In-memory store of stock reservations."""

    entity_type = "StockReservation"

    async def find(
        self,
        reference: str | None = None,
        order_id: str | None = None,
        product_id: str | None = None,
        status: ReservationStatus | None = None,
    ) -> list[StockReservation]:
        """Find reservations matching every given filter."""
        result = []
        for r in self._items.values():
            if reference is not None and r.reference != reference:
                continue
            if order_id is not None and r.order_id != order_id:
                continue
            if product_id is not None and r.product_id != product_id:
                continue
            if status is not None and r.status != status:
                continue
            result.append(deepcopy(r))
        result.sort(key=lambda r: r.created_at)
        return result

    async def list_expired(self, now: datetime) -> list[StockReservation]:
        return [
            deepcopy(r)
            for r in self._items.values()
            if r.status == ReservationStatus.ACTIVE and r.expires_at <= now
        ]


class InMemoryInventoryHistoryRepository(AppendOnlyRepository[InventoryHistoryEntry]):
    """Append-only inventory audit trail."""

    async def list_for_product(
        self, product_id: str, limit: int | None = None
    ) -> list[InventoryHistoryEntry]:
        """Get a product's entries, newest first."""
        entries = [deepcopy(e) for e in reversed(self._entries) if e.product_id == product_id]
        return entries[:limit] if limit else entries


# ============================================================================
# Payment Confirmations
# ============================================================================


class InMemoryPaymentConfirmationRepository(VersionedRepository[PaymentConfirmation]):
    """In-memory store of payment confirmations."""

    entity_type = "PaymentConfirmation"

    async def list_by_payment(self, payment_id: str) -> list[PaymentConfirmation]:
        found = [deepcopy(c) for c in self._items.values() if c.payment_id == payment_id]
        found.sort(key=lambda c: c.created_at)
        return found


class InMemoryConfirmationHistoryRepository(AppendOnlyRepository[ConfirmationHistoryEntry]):
    """Append-only log of payment confirmation actions."""

    async def list_for_confirmation(self, confirmation_id: str) -> list[ConfirmationHistoryEntry]:
        return [deepcopy(e) for e in self._entries if e.confirmation_id == confirmation_id]


# ============================================================================
# Order History
# ============================================================================


class InMemoryOrderHistoryRepository(AppendOnlyRepository[OrderHistoryEntry]):
    """Append-only order audit log."""

    async def list_for_order(self, order_id: str) -> list[OrderHistoryEntry]:
        return [deepcopy(e) for e in self._entries if e.order_id == order_id]


def in_memory_repositories() -> Repositories:
    return Repositories(
        sessions=InMemoryCheckoutSessionRepository(),
        orders=InMemoryOrderRepository(),
        inventory=InMemoryInventoryRepository(),
        reservations=InMemoryReservationRepository(),
        inventory_history=InMemoryInventoryHistoryRepository(),
        confirmations=InMemoryPaymentConfirmationRepository(),
        confirmation_history=InMemoryConfirmationHistoryRepository(),
        order_history=InMemoryOrderHistoryRepository(),
    )
