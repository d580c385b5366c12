"""SQLAlchemy repositories.

Same contract as the in-memory repositories, backed by the ORM models.
Every call runs in its own transaction. Saves lock the stored row,
compare its version with the one the caller read and only then write
the new state.
"""

from copy import deepcopy
from datetime import datetime
from typing import Any, Generic, TypeVar

from sqlalchemy import Select, func, inspect, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

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
from orderflow.domain.state_machines import (
    CheckoutSessionStatus,
    OrderStatus,
    ReservationStatus,
)
from orderflow.infrastructure.database import session_scope
from orderflow.infrastructure.models import (
    CheckoutSessionModel,
    ConfirmationHistoryModel,
    InventoryHistoryModel,
    InventoryRecordModel,
    OrderHistoryModel,
    OrderModel,
    PaymentConfirmationModel,
    StockReservationModel,
)
from orderflow.infrastructure.stores import Repositories

A = TypeVar("A", bound=AggregateRoot)
H = TypeVar("H")


class SqlRepository:
    """Base for repositories over one ORM model."""

    model: Any

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize repository.

        Args:
            session_factory: Factory for async database sessions.
        """
        self.session_factory = session_factory

    async def _fetch(self, query: Select) -> list[Any]:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(query)
            return [row.to_entity() for row in result.scalars().all()]

    async def _first(self, query: Select) -> Any | None:
        found = await self._fetch(query.limit(1))
        return found[0] if found else None


# ============================================================================
# Base Stores
# ============================================================================


class SqlVersionedRepository(SqlRepository, Generic[A]):
    """Table of aggregates with optimistic concurrency."""

    entity_type = "Aggregate"

    @property
    def _key(self) -> Any:
        return inspect(self.model).primary_key[0]

    async def add(self, item: A) -> A:
        """Insert a new aggregate.

        Raises:
            ConcurrencyConflictError: If the id is already taken.
        """
        async with session_scope(self.session_factory) as session:
            if await session.get(self.model, item.id) is not None:
                raise ConcurrencyConflictError(self.entity_type, item.id, "already exists")
            session.add(self.model.from_entity(item))
            try:
                await session.flush()
            except IntegrityError as e:
                raise ConcurrencyConflictError(self.entity_type, item.id, "already exists") from e
        return deepcopy(item)

    async def get(self, item_id: str) -> A | None:
        async with session_scope(self.session_factory) as session:
            row = await session.get(self.model, item_id)
            return row.to_entity() if row is not None else None

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
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(self.model.version).where(self._key == item.id).with_for_update()
            )
            current = result.scalar_one_or_none()
            if current is None:
                raise NotFoundError(self.entity_type, item.id)
            if current != expected_version:
                raise ConcurrencyConflictError(
                    self.entity_type,
                    item.id,
                    f"expected version {expected_version}, found {current}",
                )
            await session.merge(self.model.from_entity(item))
        return deepcopy(item)

    async def list_all(self) -> list[A]:
        return await self._fetch(select(self.model).order_by(self.model.created_at))


class SqlAppendOnlyRepository(SqlRepository, Generic[H]):
    """Append-only table. Rows are inserted and never updated."""

    order_column = "created_at"

    @property
    def _ordering(self) -> Any:
        return getattr(self.model, self.order_column)

    async def append(self, entry: H) -> H:
        async with session_scope(self.session_factory) as session:
            session.add(self.model.from_entity(entry))
        return entry

    async def list_all(self) -> list[H]:
        return await self._fetch(select(self.model).order_by(self._ordering))


# ============================================================================
# Checkout Sessions
# ============================================================================


class SqlCheckoutSessionRepository(SqlVersionedRepository[CheckoutSession]):
    entity_type = "CheckoutSession"
    model = CheckoutSessionModel

    async def get_by_token(self, session_token: str) -> CheckoutSession | None:
        return await self._first(
            select(CheckoutSessionModel).where(CheckoutSessionModel.session_token == session_token)
        )

    async def list_expired(self, now: datetime) -> list[CheckoutSession]:
        """Get open sessions whose expiry has passed."""
        open_statuses = [s.value for s in CheckoutSessionStatus if s.is_open()]
        return await self._fetch(
            select(CheckoutSessionModel)
            .where(
                CheckoutSessionModel.status.in_(open_statuses),
                CheckoutSessionModel.expires_at <= now,
            )
            .order_by(CheckoutSessionModel.expires_at)
        )


# ============================================================================
# Orders
# ============================================================================


class SqlOrderRepository(SqlVersionedRepository[Order]):
    """Orders with their items. Items are written through the order."""

    entity_type = "Order"
    model = OrderModel

    async def create(self, order: Order) -> Order:
        """Insert an order with its items.

        Raises:
            DuplicateOrderNumberError: If the order number is taken.
            ConcurrencyConflictError: If the id is taken.
        """
        async with session_scope(self.session_factory) as session:
            taken = await session.execute(
                select(OrderModel.id).where(OrderModel.order_number == order.order_number)
            )
            if taken.first() is not None:
                raise DuplicateOrderNumberError(order.order_number)
            if await session.get(OrderModel, order.id) is not None:
                raise ConcurrencyConflictError(self.entity_type, order.id, "already exists")
            session.add(OrderModel.from_entity(order))
            try:
                await session.flush()
            except IntegrityError as e:
                raise DuplicateOrderNumberError(order.order_number) from e
        return deepcopy(order)

    async def number_exists(self, order_number: str) -> bool:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(func.count(OrderModel.id)).where(OrderModel.order_number == order_number)
            )
            return result.scalar_one() > 0

    async def get_by_number(self, order_number: str) -> Order | None:
        return await self._first(select(OrderModel).where(OrderModel.order_number == order_number))

    async def get_by_session(self, checkout_session_id: str) -> Order | None:
        return await self._first(
            select(OrderModel).where(OrderModel.checkout_session_id == checkout_session_id)
        )

    async def delete(self, order_id: str) -> None:
        """Remove a partially created order during rollback."""
        async with session_scope(self.session_factory) as session:
            row = await session.get(OrderModel, order_id)
            if row is not None:
                await session.delete(row)

    async def list_orders(
        self,
        status: OrderStatus | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Order], int]:
        """List orders with pagination and filtering."""
        query = select(OrderModel)
        count_query = select(func.count(OrderModel.id))
        if status:
            query = query.where(OrderModel.status == status.value)
            count_query = count_query.where(OrderModel.status == status.value)

        async with session_scope(self.session_factory) as session:
            total = (await session.execute(count_query)).scalar_one()

        query = (
            query.order_by(OrderModel.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return await self._fetch(query), total

    async def list_confirmed_before(self, cutoff: datetime) -> list[Order]:
        return await self._fetch(
            select(OrderModel)
            .where(
                OrderModel.status == OrderStatus.CONFIRMED.value,
                OrderModel.confirmed_at.is_not(None),
                OrderModel.confirmed_at <= cutoff,
            )
            .order_by(OrderModel.confirmed_at)
        )


# ============================================================================
# Inventory
# ============================================================================


class SqlInventoryRepository(SqlVersionedRepository[InventoryRecord]):
    """Inventory records keyed by product id."""

    entity_type = "InventoryRecord"
    model = InventoryRecordModel


class SqlReservationRepository(SqlVersionedRepository[StockReservation]):
    entity_type = "StockReservation"
    model = StockReservationModel

    async def find(
        self,
        reference: str | None = None,
        order_id: str | None = None,
        product_id: str | None = None,
        status: ReservationStatus | None = None,
    ) -> list[StockReservation]:
        """Find reservations matching every given filter."""
        conditions = []
        if reference is not None:
            conditions.append(StockReservationModel.reference == reference)
        if order_id is not None:
            conditions.append(StockReservationModel.order_id == order_id)
        if product_id is not None:
            conditions.append(StockReservationModel.product_id == product_id)
        if status is not None:
            conditions.append(StockReservationModel.status == status.value)

        query = select(StockReservationModel)
        if conditions:
            query = query.where(*conditions)
        return await self._fetch(query.order_by(StockReservationModel.created_at))

    async def list_expired(self, now: datetime) -> list[StockReservation]:
        return await self._fetch(
            select(StockReservationModel)
            .where(
                StockReservationModel.status == ReservationStatus.ACTIVE.value,
                StockReservationModel.expires_at <= now,
            )
            .order_by(StockReservationModel.expires_at)
        )


class SqlInventoryHistoryRepository(SqlAppendOnlyRepository[InventoryHistoryEntry]):
    model = InventoryHistoryModel

    async def list_for_product(
        self, product_id: str, limit: int | None = None
    ) -> list[InventoryHistoryEntry]:
        """Get a product's entries, newest first."""
        query = (
            select(InventoryHistoryModel)
            .where(InventoryHistoryModel.product_id == product_id)
            .order_by(InventoryHistoryModel.created_at.desc())
        )
        if limit:
            query = query.limit(limit)
        return await self._fetch(query)


# ============================================================================
# Payment Confirmations
# ============================================================================


class SqlPaymentConfirmationRepository(SqlVersionedRepository[PaymentConfirmation]):
    entity_type = "PaymentConfirmation"
    model = PaymentConfirmationModel

    async def list_by_payment(self, payment_id: str) -> list[PaymentConfirmation]:
        return await self._fetch(
            select(PaymentConfirmationModel)
            .where(PaymentConfirmationModel.payment_id == payment_id)
            .order_by(PaymentConfirmationModel.created_at)
        )


class SqlConfirmationHistoryRepository(SqlAppendOnlyRepository[ConfirmationHistoryEntry]):
    model = ConfirmationHistoryModel
    order_column = "timestamp"

    async def list_for_confirmation(self, confirmation_id: str) -> list[ConfirmationHistoryEntry]:
        return await self._fetch(
            select(ConfirmationHistoryModel)
            .where(ConfirmationHistoryModel.confirmation_id == confirmation_id)
            .order_by(ConfirmationHistoryModel.timestamp)
        )


# ============================================================================
# Order History
# ============================================================================


class SqlOrderHistoryRepository(SqlAppendOnlyRepository[OrderHistoryEntry]):
    model = OrderHistoryModel

    async def list_for_order(self, order_id: str) -> list[OrderHistoryEntry]:
        return await self._fetch(
            select(OrderHistoryModel)
            .where(OrderHistoryModel.order_id == order_id)
            .order_by(OrderHistoryModel.created_at)
        )


def sql_repositories(session_factory: async_sessionmaker[AsyncSession]) -> Repositories:
    """Build every repository over one session factory."""
    return Repositories(
        sessions=SqlCheckoutSessionRepository(session_factory),
        orders=SqlOrderRepository(session_factory),
        inventory=SqlInventoryRepository(session_factory),
        reservations=SqlReservationRepository(session_factory),
        inventory_history=SqlInventoryHistoryRepository(session_factory),
        confirmations=SqlPaymentConfirmationRepository(session_factory),
        confirmation_history=SqlConfirmationHistoryRepository(session_factory),
        order_history=SqlOrderHistoryRepository(session_factory),
    )
