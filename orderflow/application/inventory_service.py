"""Inventory ledger service.

Owns on-hand and reserved quantities per product and writes an
append-only history entry for every mutation:
- Initializing and adjusting stock levels
- Reserving stock for checkout sessions
- Releasing, consuming and restoring reservations
- Sweeping expired reservations
- Low-stock alerts and analytics

Every mutation of a product runs under that product's lock, so the
read-check-write of a reservation is one critical section.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from orderflow.application.results import ServiceResult
from orderflow.domain.base import new_id, utcnow
from orderflow.domain.entities import (
    InventoryAction,
    InventoryHistoryEntry,
    InventoryRecord,
    InventorySource,
    StockReservation,
)
from orderflow.domain.exceptions import (
    DomainError,
    InsufficientInventoryError,
    InvalidQuantityError,
    InventoryAlreadyInitializedError,
    NotFoundError,
)
from orderflow.domain.state_machines import ReservationStatus, validate_reservation_transition
from orderflow.infrastructure.collaborators import Notifier
from orderflow.infrastructure.config import Settings, settings as default_settings
from orderflow.infrastructure.stores import (
    InventoryHistoryRepository,
    InventoryRepository,
    ReservationRepository,
)

logger = structlog.get_logger()


@dataclass
class InventoryAnalytics:
    """Stock totals across all products."""

    total_products: int
    total_on_hand: int
    total_reserved: int
    total_available: int
    low_stock_products: int
    out_of_stock_products: int
    active_reservations: int


class InventoryLedger:
    """Application service for stock levels and reservations."""

    def __init__(
        self,
        inventory_repo: InventoryRepository,
        reservation_repo: ReservationRepository,
        history_repo: InventoryHistoryRepository,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize service.

        Args:
            inventory_repo: Inventory record repository.
            reservation_repo: Reservation repository.
            history_repo: Append-only inventory history.
            notifier: Receives low-stock alerts.
            settings: Application settings.
        """
        self.inventory_repo = inventory_repo
        self.reservation_repo = reservation_repo
        self.history_repo = history_repo
        self.notifier = notifier
        self.settings = settings or default_settings
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # -------------------------------------------------------------------------
    # Stock Levels
    # -------------------------------------------------------------------------

    async def initialize(
        self,
        product_id: str,
        quantity: int,
        actor: str | None = None,
        low_stock_threshold: int | None = None,
    ) -> ServiceResult[InventoryRecord]:
        """Create the inventory record for a product.

        Args:
            product_id: Product to track.
            quantity: Starting quantity on hand.
            actor: Who initialized it.
            low_stock_threshold: Per-product alert threshold.

        Returns:
            ServiceResult with the new record.
        """
        try:
            if quantity < 0:
                raise InvalidQuantityError(quantity, "Initial quantity cannot be negative")
            async with self._locks[product_id]:
                if await self.inventory_repo.get(product_id) is not None:
                    raise InventoryAlreadyInitializedError(product_id)
                threshold = (
                    low_stock_threshold
                    if low_stock_threshold is not None
                    else self.settings.low_stock_threshold
                )
                record = InventoryRecord(
                    id=product_id,
                    quantity_on_hand=quantity,
                    low_stock_threshold=threshold,
                )
                await self.inventory_repo.add(record)
                await self.history_repo.append(
                    InventoryHistoryEntry(
                        product_id=product_id,
                        action=InventoryAction.INITIALIZE,
                        quantity_before=0,
                        quantity_after=quantity,
                        quantity_changed=quantity,
                        reserved_before=0,
                        reserved_after=0,
                        reason="Initial stock",
                        source=InventorySource.MANUAL,
                        actor=actor,
                    )
                )
            logger.info("Inventory initialized", product_id=product_id, quantity=quantity)
            return ServiceResult.ok(record)
        except DomainError as e:
            return ServiceResult.fail(e)

    async def adjust_quantity(
        self,
        product_id: str,
        delta: int,
        reason: str,
        source: InventorySource = InventorySource.MANUAL,
        actor: str | None = None,
        order_id: str | None = None,
    ) -> ServiceResult[InventoryHistoryEntry]:
        """Add or remove physical stock.

        Args:
            product_id: Product to adjust.
            delta: Units to add (positive) or remove (negative).
            reason: Why the stock changed.
            source: Origin of the change.
            actor: Who made the change.
            order_id: Related order, if any.

        Returns:
            ServiceResult with the written history entry.
        """
        try:
            if delta == 0:
                raise InvalidQuantityError(0, "Adjustment must be non-zero")
            action = InventoryAction.INCREASE if delta > 0 else InventoryAction.DECREASE
            async with self._locks[product_id]:
                record = await self._get_record(product_id)
                entry = await self._mutate(
                    record,
                    action,
                    on_hand_delta=delta,
                    reason=reason,
                    source=source,
                    actor=actor,
                    order_id=order_id,
                )
            return ServiceResult.ok(entry)
        except DomainError as e:
            logger.warning("Inventory adjustment rejected", product_id=product_id, error=e.message)
            return ServiceResult.fail(e)

    async def set_quantity(
        self,
        product_id: str,
        new_quantity: int,
        reason: str,
        actor: str | None = None,
    ) -> ServiceResult[InventoryHistoryEntry]:
        """Correct the on-hand quantity after a stock count.

        Returns:
            ServiceResult with the written ``adjust`` history entry.
        """
        try:
            if new_quantity < 0:
                raise InvalidQuantityError(new_quantity, "Quantity cannot be negative")
            async with self._locks[product_id]:
                record = await self._get_record(product_id)
                entry = await self._mutate(
                    record,
                    InventoryAction.ADJUST,
                    on_hand_delta=new_quantity - record.quantity_on_hand,
                    reason=reason,
                    source=InventorySource.ADJUSTMENT,
                    actor=actor,
                )
            return ServiceResult.ok(entry)
        except DomainError as e:
            return ServiceResult.fail(e)

    # -------------------------------------------------------------------------
    # Reservations
    # -------------------------------------------------------------------------

    async def reserve(
        self,
        product_id: str,
        quantity: int,
        reference: str,
        ttl: timedelta | None = None,
        customer_id: str | None = None,
    ) -> ServiceResult[StockReservation]:
        """Hold stock for a checkout session.

        Args:
            product_id: Product to hold.
            quantity: Units to hold.
            reference: Owning checkout session.
            ttl: Hold duration (defaults to the configured reservation TTL).
            customer_id: Customer, if known.

        Returns:
            ServiceResult with the active reservation.
        """
        try:
            if quantity <= 0:
                raise InvalidQuantityError(quantity)
            ttl = ttl or timedelta(minutes=self.settings.reservation_ttl_minutes)
            async with self._locks[product_id]:
                record = await self._get_record(product_id)
                if record.quantity_available < quantity:
                    raise InsufficientInventoryError(
                        product_id, quantity, record.quantity_available
                    )
                reservation = StockReservation(
                    id=new_id(),
                    product_id=product_id,
                    quantity=quantity,
                    reference=reference,
                    customer_id=customer_id,
                    expires_at=utcnow() + ttl,
                )
                await self._mutate(
                    record,
                    InventoryAction.RESERVE,
                    reserved_delta=quantity,
                    reason=f"Reserved for {reference}",
                    source=InventorySource.ORDER,
                    actor=customer_id,
                    reservation_id=reservation.id,
                )
                await self.reservation_repo.add(reservation)
            logger.info(
                "Stock reserved",
                product_id=product_id,
                quantity=quantity,
                reservation_id=reservation.id,
                reference=reference,
            )
            return ServiceResult.ok(reservation)
        except DomainError as e:
            logger.info("Reservation refused", product_id=product_id, error=e.message)
            return ServiceResult.fail(e)

    async def release(
        self,
        reservation_id: str,
        reason: str,
        source: InventorySource = InventorySource.SYSTEM,
        actor: str | None = None,
    ) -> ServiceResult[StockReservation]:
        """Return a reservation's quantity to the available pool.

        Releasing a reservation that is no longer active is a no-op.

        Returns:
            ServiceResult with the reservation in its current state.
        """
        try:
            reservation = await self._get_reservation(reservation_id)
            async with self._locks[reservation.product_id]:
                reservation = await self._get_reservation(reservation_id)
                if reservation.status != ReservationStatus.ACTIVE:
                    logger.debug(
                        "Reservation already settled, release skipped",
                        reservation_id=reservation_id,
                        status=reservation.status.value,
                    )
                    return ServiceResult.ok(reservation)
                record = await self._get_record(reservation.product_id)
                await self._mutate(
                    record,
                    InventoryAction.RELEASE,
                    reserved_delta=-reservation.quantity,
                    reason=reason,
                    source=source,
                    actor=actor,
                    order_id=reservation.order_id,
                    reservation_id=reservation.id,
                )
                expected = reservation.version
                reservation.transition_to(ReservationStatus.RELEASED)
                reservation.release_reason = reason
                reservation = await self.reservation_repo.save(reservation, expected)
            logger.info("Reservation released", reservation_id=reservation_id, reason=reason)
            return ServiceResult.ok(reservation)
        except DomainError as e:
            return ServiceResult.fail(e)

    async def consume(
        self,
        reservation_id: str,
        order_id: str,
        actor: str | None = None,
    ) -> ServiceResult[StockReservation]:
        """Turn a reservation into a permanent stock decrement.

        On-hand and reserved drop by the reserved amount together.

        Returns:
            ServiceResult with the consumed reservation.
        """
        try:
            reservation = await self._get_reservation(reservation_id)
            async with self._locks[reservation.product_id]:
                reservation = await self._get_reservation(reservation_id)
                validate_reservation_transition(
                    reservation.id, reservation.status, ReservationStatus.CONSUMED
                )
                record = await self._get_record(reservation.product_id)
                await self._mutate(
                    record,
                    InventoryAction.DECREASE,
                    on_hand_delta=-reservation.quantity,
                    reserved_delta=-reservation.quantity,
                    reason=f"Consumed by order {order_id}",
                    source=InventorySource.ORDER,
                    actor=actor,
                    order_id=order_id,
                    reservation_id=reservation.id,
                )
                expected = reservation.version
                reservation.order_id = order_id
                reservation.transition_to(ReservationStatus.CONSUMED)
                reservation = await self.reservation_repo.save(reservation, expected)
            return ServiceResult.ok(reservation)
        except DomainError as e:
            logger.warning("Reservation consume failed", reservation_id=reservation_id, error=e.message)
            return ServiceResult.fail(e)

    async def restore(self, reservation_id: str, reason: str) -> ServiceResult[StockReservation]:
        """Undo a consume while rolling back an order.

        The reservation becomes active again and both quantities are
        re-incremented, so a following release frees the stock.
        """
        try:
            reservation = await self._get_reservation(reservation_id)
            async with self._locks[reservation.product_id]:
                reservation = await self._get_reservation(reservation_id)
                validate_reservation_transition(
                    reservation.id, reservation.status, ReservationStatus.ACTIVE
                )
                record = await self._get_record(reservation.product_id)
                await self._mutate(
                    record,
                    InventoryAction.INCREASE,
                    on_hand_delta=reservation.quantity,
                    reserved_delta=reservation.quantity,
                    reason=reason,
                    source=InventorySource.SYSTEM,
                    order_id=reservation.order_id,
                    reservation_id=reservation.id,
                )
                expected = reservation.version
                reservation.order_id = None
                reservation.transition_to(ReservationStatus.ACTIVE)
                reservation = await self.reservation_repo.save(reservation, expected)
            return ServiceResult.ok(reservation)
        except DomainError as e:
            logger.error("Reservation restore failed", reservation_id=reservation_id, error=e.message)
            return ServiceResult.fail(e)

    async def restock(
        self,
        order_id: str,
        reason: str,
        actor: str | None = None,
    ) -> ServiceResult[list[InventoryHistoryEntry]]:
        """Put an order's consumed stock back on the shelf.

        Returns:
            ServiceResult with one ``increase`` entry per consumed reservation.
        """
        entries = []
        try:
            consumed = await self.reservation_repo.find(
                order_id=order_id, status=ReservationStatus.CONSUMED
            )
            for reservation in consumed:
                async with self._locks[reservation.product_id]:
                    record = await self._get_record(reservation.product_id)
                    entries.append(
                        await self._mutate(
                            record,
                            InventoryAction.INCREASE,
                            on_hand_delta=reservation.quantity,
                            reason=reason,
                            source=InventorySource.RETURN,
                            actor=actor,
                            order_id=order_id,
                            reservation_id=reservation.id,
                        )
                    )
            return ServiceResult.ok(entries)
        except DomainError as e:
            return ServiceResult.fail(e)

    async def release_for_reference(
        self,
        reference: str,
        reason: str,
        source: InventorySource = InventorySource.SYSTEM,
    ) -> ServiceResult[list[StockReservation]]:
        """Release every active reservation held by a checkout session."""
        released = []
        active = await self.reservation_repo.find(
            reference=reference, status=ReservationStatus.ACTIVE
        )
        for reservation in active:
            result = await self.release(reservation.id, reason, source)
            if not result.success:
                return ServiceResult(
                    value=released,
                    success=False,
                    error=result.error,
                    error_code=result.error_code,
                    error_kind=result.error_kind,
                    cause=result.cause,
                )
            released.append(result.value)
        return ServiceResult.ok(released)

    async def release_expired(self, now: datetime | None = None) -> list[str]:
        """Release every active reservation past its expiry.

        Args:
            now: Reference time (defaults to the current time).

        Returns:
            IDs of the released reservations.
        """
        now = now or utcnow()
        released = []
        for reservation in await self.reservation_repo.list_expired(now):
            result = await self.release(reservation.id, "Reservation expired")
            if result.success:
                released.append(reservation.id)
            else:
                logger.warning(
                    "Failed to release expired reservation",
                    reservation_id=reservation.id,
                    error=result.error,
                )
        if released:
            logger.info("Expired reservations released", count=len(released))
        return released

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_record(self, product_id: str) -> ServiceResult[InventoryRecord]:
        try:
            return ServiceResult.ok(await self._get_record(product_id))
        except DomainError as e:
            return ServiceResult.fail(e)

    async def get_reservations(
        self,
        reference: str | None = None,
        order_id: str | None = None,
        product_id: str | None = None,
        status: ReservationStatus | None = None,
    ) -> list[StockReservation]:
        return await self.reservation_repo.find(
            reference=reference, order_id=order_id, product_id=product_id, status=status
        )

    async def get_history(
        self, product_id: str, limit: int | None = 50
    ) -> list[InventoryHistoryEntry]:
        """Get a product's history, newest first."""
        return await self.history_repo.list_for_product(product_id, limit)

    async def get_low_stock(self) -> list[InventoryRecord]:
        records = await self.inventory_repo.list_all()
        return sorted(
            (r for r in records if r.is_low_stock),
            key=lambda r: r.quantity_available,
        )

    async def get_analytics(self) -> InventoryAnalytics:
        records = await self.inventory_repo.list_all()
        active = await self.reservation_repo.find(status=ReservationStatus.ACTIVE)
        return InventoryAnalytics(
            total_products=len(records),
            total_on_hand=sum(r.quantity_on_hand for r in records),
            total_reserved=sum(r.quantity_reserved for r in records),
            total_available=sum(r.quantity_available for r in records),
            low_stock_products=sum(1 for r in records if r.is_low_stock),
            out_of_stock_products=sum(1 for r in records if r.quantity_available <= 0),
            active_reservations=len(active),
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _get_record(self, product_id: str) -> InventoryRecord:
        record = await self.inventory_repo.get(product_id)
        if record is None:
            raise NotFoundError("InventoryRecord", product_id)
        return record

    async def _get_reservation(self, reservation_id: str) -> StockReservation:
        reservation = await self.reservation_repo.get(reservation_id)
        if reservation is None:
            raise NotFoundError("StockReservation", reservation_id)
        return reservation

    async def _mutate(
        self,
        record: InventoryRecord,
        action: InventoryAction,
        reason: str,
        source: InventorySource,
        on_hand_delta: int = 0,
        reserved_delta: int = 0,
        actor: str | None = None,
        order_id: str | None = None,
        reservation_id: str | None = None,
    ) -> InventoryHistoryEntry:
        """Apply a change to a record, persist it and write history.

        Must be called with the product's lock held.
        """
        quantity_before = record.quantity_on_hand
        reserved_before = record.quantity_reserved
        was_low = record.is_low_stock
        expected = record.version

        record.apply(on_hand_delta, reserved_delta)
        await self.inventory_repo.save(record, expected)

        entry = InventoryHistoryEntry(
            product_id=record.product_id,
            action=action,
            quantity_before=quantity_before,
            quantity_after=record.quantity_on_hand,
            quantity_changed=on_hand_delta,
            reserved_before=reserved_before,
            reserved_after=record.quantity_reserved,
            reason=reason,
            source=source,
            actor=actor,
            order_id=order_id,
            reservation_id=reservation_id,
        )
        await self.history_repo.append(entry)

        if record.is_low_stock and not was_low:
            await self._alert_low_stock(record)
        return entry

    async def _alert_low_stock(self, record: InventoryRecord) -> None:
        logger.warning(
            "Low stock",
            product_id=record.product_id,
            available=record.quantity_available,
            threshold=record.low_stock_threshold,
        )
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(
                "inventory.low_stock",
                {
                    "product_id": record.product_id,
                    "quantity_available": record.quantity_available,
                    "low_stock_threshold": record.low_stock_threshold,
                },
            )
        except Exception as e:
            logger.warning("Low stock notification failed", product_id=record.product_id, error=str(e))
