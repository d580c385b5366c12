"""Tests for the inventory ledger."""

import asyncio
from datetime import timedelta

import pytest

from orderflow.bootstrap import Services
from orderflow.domain import InventoryAction, ReservationStatus
from orderflow.domain.base import utcnow
from orderflow.domain.exceptions import ErrorKind


@pytest.fixture
def ledger(services: Services):
    return services.ledger


class TestStockLevels:
    """Tests for initializing and adjusting stock."""

    @pytest.mark.asyncio
    async def test_initialize_writes_history(self, ledger) -> None:
        """Initializing creates the record and an initialize entry."""
        result = await ledger.initialize("prod-a", 25, actor="admin")

        assert result.success
        assert result.value.quantity_on_hand == 25
        history = await ledger.get_history("prod-a")
        assert [e.action for e in history] == [InventoryAction.INITIALIZE]
        assert history[0].quantity_after == 25

    @pytest.mark.asyncio
    async def test_initialize_twice_fails(self, ledger) -> None:
        """A product can only be initialized once."""
        await ledger.initialize("prod-a", 5)
        result = await ledger.initialize("prod-a", 5)

        assert not result.success
        assert result.error_code == "INVENTORY_EXISTS"

    @pytest.mark.asyncio
    async def test_adjust_quantity(self, ledger) -> None:
        """Adjustments move on-hand and are recorded as increase or decrease."""
        await ledger.initialize("prod-a", 20)

        up = await ledger.adjust_quantity("prod-a", 5, reason="delivery")
        down = await ledger.adjust_quantity("prod-a", -8, reason="damaged")

        assert up.value.action == InventoryAction.INCREASE
        assert down.value.action == InventoryAction.DECREASE
        assert down.value.quantity_before == 25
        assert down.value.quantity_after == 17

    @pytest.mark.asyncio
    async def test_adjust_cannot_drop_below_reserved(self, ledger) -> None:
        """Removing stock that is held by reservations is refused."""
        await ledger.initialize("prod-a", 10)
        await ledger.reserve("prod-a", 8, reference="sess-1")

        result = await ledger.adjust_quantity("prod-a", -5, reason="count")

        assert not result.success
        assert result.error_code == "INVALID_QUANTITY"
        record = (await ledger.get_record("prod-a")).value
        assert record.quantity_on_hand == 10

    @pytest.mark.asyncio
    async def test_zero_adjustment_rejected(self, ledger) -> None:
        """A zero delta is not a valid adjustment."""
        await ledger.initialize("prod-a", 10)
        result = await ledger.adjust_quantity("prod-a", 0, reason="noop")
        assert result.error_kind == ErrorKind.VALIDATION

    @pytest.mark.asyncio
    async def test_set_quantity_records_adjust(self, ledger) -> None:
        """set_quantity records the delta to the counted quantity."""
        await ledger.initialize("prod-a", 10)

        result = await ledger.set_quantity("prod-a", 4, reason="stock count")

        assert result.value.action == InventoryAction.ADJUST
        assert result.value.quantity_changed == -6
        assert (await ledger.get_record("prod-a")).value.quantity_on_hand == 4

    @pytest.mark.asyncio
    async def test_unknown_product(self, ledger) -> None:
        """Operations on an unknown product fail with NOT_FOUND."""
        result = await ledger.reserve("missing", 1, reference="sess-1")
        assert result.error_kind == ErrorKind.NOT_FOUND


class TestReservations:
    """Tests for reserve, consume, release and restore."""

    @pytest.mark.asyncio
    async def test_reserve_holds_stock(self, ledger) -> None:
        """Reserving increases reserved without touching on-hand."""
        await ledger.initialize("prod-a", 10)

        result = await ledger.reserve("prod-a", 3, reference="sess-1", customer_id="u-1")

        assert result.value.status == ReservationStatus.ACTIVE
        record = (await ledger.get_record("prod-a")).value
        assert record.quantity_on_hand == 10
        assert record.quantity_reserved == 3
        assert record.quantity_available == 7

    @pytest.mark.asyncio
    async def test_reserve_more_than_available(self, ledger) -> None:
        """A request above available stock fails and holds nothing."""
        await ledger.initialize("prod-a", 2)

        result = await ledger.reserve("prod-a", 3, reference="sess-1")

        assert result.error_code == "INSUFFICIENT_INVENTORY"
        assert result.cause.details["available"] == 2
        assert (await ledger.get_record("prod-a")).value.quantity_reserved == 0

    @pytest.mark.asyncio
    async def test_consume_decrements_both(self, ledger) -> None:
        """Consuming removes the units from on-hand and reserved."""
        await ledger.initialize("prod-a", 10)
        reservation = (await ledger.reserve("prod-a", 4, reference="sess-1")).value

        result = await ledger.consume(reservation.id, order_id="ord-1")

        assert result.value.status == ReservationStatus.CONSUMED
        assert result.value.order_id == "ord-1"
        record = (await ledger.get_record("prod-a")).value
        assert (record.quantity_on_hand, record.quantity_reserved) == (6, 0)

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, ledger) -> None:
        """Releasing twice frees the stock once and writes one entry."""
        await ledger.initialize("prod-a", 10)
        reservation = (await ledger.reserve("prod-a", 4, reference="sess-1")).value

        first = await ledger.release(reservation.id, reason="abandoned")
        second = await ledger.release(reservation.id, reason="abandoned")

        assert first.success and second.success
        assert second.value.status == ReservationStatus.RELEASED
        record = (await ledger.get_record("prod-a")).value
        assert record.quantity_reserved == 0
        releases = [
            e for e in await ledger.get_history("prod-a") if e.action == InventoryAction.RELEASE
        ]
        assert len(releases) == 1

    @pytest.mark.asyncio
    async def test_consumed_reservation_cannot_be_released(self, ledger) -> None:
        """Release skips a consumed hold and leaves stock untouched."""
        await ledger.initialize("prod-a", 10)
        reservation = (await ledger.reserve("prod-a", 4, reference="sess-1")).value
        await ledger.consume(reservation.id, order_id="ord-1")

        result = await ledger.release(reservation.id, reason="late")

        assert result.value.status == ReservationStatus.CONSUMED
        assert (await ledger.get_record("prod-a")).value.quantity_on_hand == 6

    @pytest.mark.asyncio
    async def test_restore_then_release(self, ledger) -> None:
        """Restore undoes a consume so a release frees the units again."""
        await ledger.initialize("prod-a", 10)
        reservation = (await ledger.reserve("prod-a", 4, reference="sess-1")).value
        await ledger.consume(reservation.id, order_id="ord-1")

        restored = await ledger.restore(reservation.id, reason="rollback")
        await ledger.release(reservation.id, reason="rollback")

        assert restored.value.status == ReservationStatus.ACTIVE
        assert restored.value.order_id is None
        record = (await ledger.get_record("prod-a")).value
        assert (record.quantity_on_hand, record.quantity_reserved) == (10, 0)

    @pytest.mark.asyncio
    async def test_release_for_reference(self, ledger) -> None:
        """Only the session's active holds are released."""
        await ledger.initialize("prod-a", 10)
        await ledger.initialize("prod-b", 10)
        await ledger.reserve("prod-a", 1, reference="sess-1")
        await ledger.reserve("prod-b", 2, reference="sess-1")
        await ledger.reserve("prod-a", 3, reference="sess-2")

        result = await ledger.release_for_reference("sess-1", reason="abandoned")

        assert len(result.value) == 2
        assert (await ledger.get_record("prod-a")).value.quantity_reserved == 3
        assert (await ledger.get_record("prod-b")).value.quantity_reserved == 0

    @pytest.mark.asyncio
    async def test_release_expired(self, ledger) -> None:
        """Expired holds are released by the sweep, live ones stay."""
        await ledger.initialize("prod-a", 10)
        short = (
            await ledger.reserve("prod-a", 2, reference="sess-1", ttl=timedelta(minutes=1))
        ).value
        await ledger.reserve("prod-a", 3, reference="sess-2", ttl=timedelta(hours=1))

        released = await ledger.release_expired(utcnow() + timedelta(minutes=5))

        assert released == [short.id]
        assert (await ledger.get_record("prod-a")).value.quantity_reserved == 3

    @pytest.mark.asyncio
    async def test_restock_puts_consumed_units_back(self, ledger) -> None:
        """Restocking an order adds its consumed quantities to on-hand."""
        await ledger.initialize("prod-a", 10)
        reservation = (await ledger.reserve("prod-a", 4, reference="sess-1")).value
        await ledger.consume(reservation.id, order_id="ord-1")

        result = await ledger.restock("ord-1", reason="cancelled")

        assert len(result.value) == 1
        assert (await ledger.get_record("prod-a")).value.quantity_on_hand == 10

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_oversell(self, ledger) -> None:
        """Two customers racing for the last unit: exactly one wins."""
        await ledger.initialize("prod-a", 1)

        results = await asyncio.gather(
            ledger.reserve("prod-a", 1, reference="sess-1"),
            ledger.reserve("prod-a", 1, reference="sess-2"),
        )

        assert sorted(r.success for r in results) == [False, True]
        loser = next(r for r in results if not r.success)
        assert loser.error_code == "INSUFFICIENT_INVENTORY"
        record = (await ledger.get_record("prod-a")).value
        assert record.quantity_reserved == 1
        assert record.quantity_available == 0


class TestAlertsAndAnalytics:
    """Tests for low-stock alerts and analytics."""

    @pytest.mark.asyncio
    async def test_low_stock_alert_on_crossing(self, services: Services) -> None:
        """An alert fires once when available drops to the threshold."""
        ledger = services.ledger
        await ledger.initialize("prod-a", 20, low_stock_threshold=5)

        await ledger.reserve("prod-a", 10, reference="sess-1")
        assert "inventory.low_stock" not in services.notifier.events()

        await ledger.reserve("prod-a", 5, reference="sess-2")
        await ledger.reserve("prod-a", 1, reference="sess-3")

        assert services.notifier.events().count("inventory.low_stock") == 1
        _, payload = services.notifier.sent[-1]
        assert payload["product_id"] == "prod-a"
        assert payload["quantity_available"] == 5

    @pytest.mark.asyncio
    async def test_get_low_stock_sorted(self, ledger) -> None:
        """Low stock products are listed with the scarcest first."""
        await ledger.initialize("prod-a", 4, low_stock_threshold=5)
        await ledger.initialize("prod-b", 1, low_stock_threshold=5)
        await ledger.initialize("prod-c", 50, low_stock_threshold=5)

        low = await ledger.get_low_stock()

        assert [r.product_id for r in low] == ["prod-b", "prod-a"]

    @pytest.mark.asyncio
    async def test_analytics(self, ledger) -> None:
        """Analytics sum quantities across products."""
        await ledger.initialize("prod-a", 10, low_stock_threshold=2)
        await ledger.initialize("prod-b", 0, low_stock_threshold=2)
        await ledger.reserve("prod-a", 3, reference="sess-1")

        analytics = await ledger.get_analytics()

        assert analytics.total_products == 2
        assert analytics.total_on_hand == 10
        assert analytics.total_reserved == 3
        assert analytics.total_available == 7
        assert analytics.out_of_stock_products == 1
        assert analytics.low_stock_products == 1
        assert analytics.active_reservations == 1
