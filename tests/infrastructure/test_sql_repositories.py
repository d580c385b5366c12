"""Tests for the SQLAlchemy repositories against SQLite."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from orderflow.bootstrap import Services, build_services
from orderflow.domain import (
    CheckoutSession,
    CheckoutSessionStatus,
    HistoryEventType,
    InventoryRecord,
    Order,
    OrderHistoryEntry,
    OrderItem,
    OrderStatus,
    ReservationStatus,
)
from orderflow.domain.base import utcnow
from orderflow.domain.exceptions import (
    ConcurrencyConflictError,
    DuplicateOrderNumberError,
    NotFoundError,
)
from orderflow.infrastructure.database import session_scope
from orderflow.infrastructure.models import OrderItemModel
from orderflow.infrastructure.sql_repositories import (
    SqlCheckoutSessionRepository,
    SqlInventoryRepository,
    SqlOrderHistoryRepository,
    SqlOrderRepository,
    sql_repositories,
)


@pytest.fixture
def services(settings, session_factory) -> Services:
    """Service graph over SQLite instead of memory."""
    return build_services(settings, repositories=sql_repositories(session_factory))


def _order(order_id: str, order_number: str, minutes: int = 0) -> Order:
    return Order(
        id=order_id,
        order_number=order_number,
        checkout_session_id=f"sess-{order_id}",
        cart_id="cart-1",
        items=[
            OrderItem(product_id="prod-a", name="Product A", unit_price_cents=5000, quantity=2),
            OrderItem(product_id="prod-b", name="Product B", unit_price_cents=2000, quantity=1),
        ],
        subtotal_cents=12000,
        total_cents=12000,
        created_at=utcnow() + timedelta(minutes=minutes),
    )


class TestSqlVersionedRepository:
    """Tests for compare-and-swap writes against the database."""

    @pytest.mark.asyncio
    async def test_stale_write_rejected(self, session_factory) -> None:
        """The second writer of the same version loses."""
        repo = SqlCheckoutSessionRepository(session_factory)
        stored = await repo.add(CheckoutSession.create("cart-1", timedelta(hours=1)))
        first = await repo.get(stored.id)
        second = await repo.get(stored.id)

        first.update_details(customer_notes="first")
        await repo.save(first, stored.version)
        second.update_details(customer_notes="second")

        with pytest.raises(ConcurrencyConflictError):
            await repo.save(second, stored.version)
        loaded = await repo.get(stored.id)
        assert loaded.customer_notes == "first"
        assert loaded.version == first.version

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, session_factory) -> None:
        """Adding the same id twice is a conflict."""
        repo = SqlInventoryRepository(session_factory)
        await repo.add(InventoryRecord(id="prod-a", quantity_on_hand=5))

        with pytest.raises(ConcurrencyConflictError):
            await repo.add(InventoryRecord(id="prod-a", quantity_on_hand=9))
        assert (await repo.get("prod-a")).quantity_on_hand == 5

    @pytest.mark.asyncio
    async def test_save_unknown_not_found(self, session_factory) -> None:
        """Saving something never added is an error."""
        repo = SqlInventoryRepository(session_factory)

        with pytest.raises(NotFoundError):
            await repo.save(InventoryRecord(id="ghost"), 1)

    @pytest.mark.asyncio
    async def test_expired_sessions_listed(self, session_factory) -> None:
        """Only open sessions past their expiry are listed."""
        repo = SqlCheckoutSessionRepository(session_factory)
        expired = await repo.add(CheckoutSession.create("cart-1", timedelta(minutes=1)))
        await repo.add(CheckoutSession.create("cart-2", timedelta(hours=1)))
        done = CheckoutSession.create("cart-3", timedelta(minutes=1))
        done.status = CheckoutSessionStatus.ABANDONED
        await repo.add(done)

        found = await repo.list_expired(utcnow() + timedelta(minutes=5))

        assert [s.id for s in found] == [expired.id]
        assert (await repo.get_by_token(expired.session_token)).id == expired.id


class TestSqlOrderRepository:
    """Tests for order storage."""

    @pytest.mark.asyncio
    async def test_duplicate_number_rejected(self, session_factory) -> None:
        """Order numbers are unique."""
        repo = SqlOrderRepository(session_factory)
        await repo.create(_order("o1", "ORD-1"))

        with pytest.raises(DuplicateOrderNumberError):
            await repo.create(_order("o2", "ORD-1"))
        assert await repo.number_exists("ORD-1")
        assert not await repo.number_exists("ORD-2")

    @pytest.mark.asyncio
    async def test_items_loaded_in_order(self, session_factory) -> None:
        """Items come back with the order, in their original order."""
        repo = SqlOrderRepository(session_factory)
        await repo.create(_order("o1", "ORD-1"))

        loaded = await repo.get_by_number("ORD-1")

        assert [i.product_id for i in loaded.items] == ["prod-a", "prod-b"]
        assert (await repo.get_by_session("sess-o1")).id == "o1"

    @pytest.mark.asyncio
    async def test_delete_removes_items(self, session_factory) -> None:
        """Deleting an order takes its items with it."""
        repo = SqlOrderRepository(session_factory)
        await repo.create(_order("o1", "ORD-1"))

        await repo.delete("o1")

        assert await repo.get("o1") is None
        assert not await repo.number_exists("ORD-1")
        async with session_scope(session_factory) as db:
            remaining = (await db.execute(select(func.count(OrderItemModel.id)))).scalar_one()
        assert remaining == 0

    @pytest.mark.asyncio
    async def test_list_orders_newest_first(self, session_factory) -> None:
        """Listing filters by status and pages newest first."""
        repo = SqlOrderRepository(session_factory)
        for i in range(3):
            await repo.create(_order(f"o{i}", f"ORD-{i}", minutes=i))
        confirmed = await repo.get("o1")
        expected = confirmed.version
        confirmed.transition_to(OrderStatus.CONFIRMED)
        await repo.save(confirmed, expected)

        page, total = await repo.list_orders(page=1, page_size=2)
        pending, pending_total = await repo.list_orders(status=OrderStatus.PENDING)

        assert total == 3
        assert [o.id for o in page] == ["o2", "o1"]
        assert pending_total == 2
        assert [o.id for o in pending] == ["o2", "o0"]


class TestSqlHistoryRepository:
    """Tests for the append-only order history table."""

    @pytest.mark.asyncio
    async def test_entries_listed_per_order(self, session_factory) -> None:
        """Entries are filtered by order and keep their metadata."""
        repo = SqlOrderHistoryRepository(session_factory)
        await repo.append(
            OrderHistoryEntry(
                order_id="o1",
                event_type=HistoryEventType.NOTES_UPDATED,
                description="first",
                metadata={"note_type": "admin"},
            )
        )
        await repo.append(
            OrderHistoryEntry(
                order_id="o2",
                event_type=HistoryEventType.NOTES_UPDATED,
                description="other",
            )
        )

        entries = await repo.list_for_order("o1")

        assert [e.description for e in entries] == ["first"]
        assert entries[0].metadata == {"note_type": "admin"}
        assert len(await repo.list_all()) == 2


class TestServicesOverSql:
    """Tests for the service graph wired to the database."""

    @pytest.mark.asyncio
    async def test_separate_worker_sweeps_shared_state(
        self, services, settings, session_factory, make_cart, stock
    ) -> None:
        """A sweeper built in another process sees sessions stored by the API."""
        await stock(prod_a=10)
        make_cart()
        session = (
            await services.checkout.create_session("cart-1", ttl=timedelta(minutes=5))
        ).value
        held = (
            await services.ledger.reserve(
                "prod-a", 2, reference=session.id, ttl=timedelta(hours=1)
            )
        ).value
        worker = build_services(settings, repositories=sql_repositories(session_factory))

        report = await worker.sweeper.sweep(utcnow() + timedelta(minutes=10))

        assert report.abandoned_sessions == [session.id]
        assert report.released_reservations == [held.id]
        stored = (await services.checkout.get_session(session.id)).value
        assert stored.status == CheckoutSessionStatus.ABANDONED
        record = (await services.ledger.get_record("prod-a")).value
        assert (record.quantity_on_hand, record.quantity_reserved) == (10, 0)
        released = await services.ledger.get_reservations(reference=session.id)
        assert [r.status for r in released] == [ReservationStatus.RELEASED]

    @pytest.mark.asyncio
    async def test_order_lifecycle(self, services, place_order) -> None:
        """An order placed and shipped is fully persisted."""
        order = await place_order()

        for status in (OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED):
            (await services.status_engine.update_order_status(order.id, status)).unwrap()

        stored = (await services.status_engine.get_order(order.id)).value
        assert stored.status == OrderStatus.SHIPPED
        assert stored.tracking_number.startswith("TRK")
        assert len(stored.items) == 2
        record = (await services.ledger.get_record("prod-a")).value
        assert (record.quantity_on_hand, record.quantity_reserved) == (8, 0)
        timeline = await services.status_engine.get_status_timeline(order.id)
        assert [e.new_value["status"] for e in timeline] == ["confirmed", "processing", "shipped"]
