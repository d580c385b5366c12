"""Order history recorder.

Append-only audit log of everything that happens to an order. Writes
are fire-and-forget: a failed write is logged and swallowed so audit
logging never blocks the business operation that triggered it.
"""

import csv
import io
import json
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from orderflow.domain.entities import (
    HistoryEventType,
    HistoryPriority,
    HistorySource,
    Order,
    OrderHistoryEntry,
)
from orderflow.domain.state_machines import OrderStatus
from orderflow.domain.value_objects import Address
from orderflow.infrastructure.stores import OrderHistoryRepository

logger = structlog.get_logger()

MAX_PAGE_SIZE = 100

EXPORT_COLUMNS = [
    "id",
    "order_id",
    "event_type",
    "description",
    "actor",
    "source",
    "priority",
    "is_customer_visible",
    "requires_follow_up",
    "created_at",
]


# ============================================================================
# Query Types
# ============================================================================


@dataclass
class HistoryQuery:
    """Filters for order history retrieval. Unset filters match everything."""

    order_id: str | None = None
    event_types: list[HistoryEventType] | None = None
    source: HistorySource | None = None
    actor: str | None = None
    priority: HistoryPriority | None = None
    requires_follow_up: bool | None = None
    is_customer_visible: bool | None = None
    start: datetime | None = None
    end: datetime | None = None
    newest_first: bool = True
    page: int = 1
    page_size: int = 50

    def matches(self, entry: OrderHistoryEntry) -> bool:
        if self.order_id is not None and entry.order_id != self.order_id:
            return False
        if self.event_types and entry.event_type not in self.event_types:
            return False
        if self.source is not None and entry.source != self.source:
            return False
        if self.actor is not None and entry.actor != self.actor:
            return False
        if self.priority is not None and entry.priority != self.priority:
            return False
        if (
            self.requires_follow_up is not None
            and entry.requires_follow_up != self.requires_follow_up
        ):
            return False
        if (
            self.is_customer_visible is not None
            and entry.is_customer_visible != self.is_customer_visible
        ):
            return False
        if self.start is not None and entry.created_at < self.start:
            return False
        if self.end is not None and entry.created_at > self.end:
            return False
        return True


@dataclass
class HistoryPage:
    """One page of history entries."""

    entries: list[OrderHistoryEntry]
    total: int
    page: int
    page_size: int

    @property
    def has_more(self) -> bool:
        return self.page * self.page_size < self.total


@dataclass
class HistoryStatistics:
    """Counts over a set of history entries."""

    total_events: int = 0
    by_event_type: dict[str, int] = field(default_factory=dict)
    by_priority: dict[str, int] = field(default_factory=dict)
    follow_up_count: int = 0
    customer_visible_count: int = 0


# ============================================================================
# Order History Recorder
# ============================================================================


class OrderHistoryRecorder:
    """Records and queries order audit events."""

    def __init__(self, history_repo: OrderHistoryRepository) -> None:
        self.history_repo = history_repo

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    async def record_order_creation(
        self, order: Order, actor: str | None = None
    ) -> OrderHistoryEntry | None:
        return await self._record(
            OrderHistoryEntry(
                order_id=order.id,
                event_type=HistoryEventType.ORDER_CREATED,
                description=f"Order {order.order_number} created",
                actor=actor,
                source=HistorySource.CUSTOMER if actor else HistorySource.SYSTEM,
                new_value={
                    "status": order.status.value,
                    "total_cents": order.total_cents,
                    "currency": order.currency,
                    "item_count": order.item_count,
                },
                metadata={
                    "order_number": order.order_number,
                    "checkout_session_id": order.checkout_session_id,
                },
                user_id=order.user_id,
            )
        )

    async def record_status_change(
        self,
        order_id: str,
        previous_status: OrderStatus,
        new_status: OrderStatus,
        actor: str | None = None,
        notes: str | None = None,
        source: HistorySource = HistorySource.SYSTEM,
    ) -> OrderHistoryEntry | None:
        """Record an order status transition.

        Cancellations and refunds are recorded with high priority.
        """
        priority = (
            HistoryPriority.HIGH
            if new_status in {OrderStatus.CANCELLED, OrderStatus.REFUNDED}
            else HistoryPriority.NORMAL
        )
        return await self._record(
            OrderHistoryEntry(
                order_id=order_id,
                event_type=HistoryEventType.STATUS_CHANGED,
                description=notes
                or f"Status changed from {previous_status.value} to {new_status.value}",
                actor=actor,
                source=source,
                priority=priority,
                previous_value={"status": previous_status.value},
                new_value={"status": new_status.value},
            )
        )

    async def record_payment_update(
        self,
        order_id: str,
        previous_status: str,
        new_status: str,
        actor: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> OrderHistoryEntry | None:
        return await self._record(
            OrderHistoryEntry(
                order_id=order_id,
                event_type=HistoryEventType.PAYMENT_UPDATED,
                description=f"Payment status changed from {previous_status} to {new_status}",
                actor=actor,
                source=HistorySource.PAYMENT,
                previous_value={"payment_status": previous_status},
                new_value={"payment_status": new_status},
                metadata=details or {},
            )
        )

    async def record_shipping_update(
        self,
        order_id: str,
        tracking_number: str | None,
        carrier: str | None,
        actor: str | None = None,
        previous_tracking_number: str | None = None,
    ) -> OrderHistoryEntry | None:
        return await self._record(
            OrderHistoryEntry(
                order_id=order_id,
                event_type=HistoryEventType.SHIPPING_UPDATED,
                description=f"Shipping updated: {carrier or 'carrier'} {tracking_number or ''}".strip(),
                actor=actor,
                source=HistorySource.SYSTEM if actor is None else HistorySource.ADMIN,
                previous_value={"tracking_number": previous_tracking_number},
                new_value={"tracking_number": tracking_number, "carrier": carrier},
            )
        )

    async def record_address_change(
        self,
        order_id: str,
        address_type: str,
        previous_address: Address | None,
        new_address: Address,
        actor: str | None = None,
    ) -> OrderHistoryEntry | None:
        return await self._record(
            OrderHistoryEntry(
                order_id=order_id,
                event_type=HistoryEventType.ADDRESS_CHANGED,
                description=f"{address_type.capitalize()} address changed",
                actor=actor,
                source=HistorySource.CUSTOMER,
                previous_value=previous_address.to_dict() if previous_address else None,
                new_value=new_address.to_dict(),
                metadata={"address_type": address_type},
            )
        )

    async def record_notes_update(
        self,
        order_id: str,
        note_type: str,
        notes: str,
        actor: str | None = None,
        previous_notes: str | None = None,
    ) -> OrderHistoryEntry | None:
        """Record a notes change. Only customer notes are customer-visible."""
        return await self._record(
            OrderHistoryEntry(
                order_id=order_id,
                event_type=HistoryEventType.NOTES_UPDATED,
                description=f"{note_type.capitalize()} notes updated",
                actor=actor,
                source=HistorySource.CUSTOMER if note_type == "customer" else HistorySource.ADMIN,
                priority=HistoryPriority.LOW,
                is_customer_visible=note_type == "customer",
                previous_value={"notes": previous_notes},
                new_value={"notes": notes},
                metadata={"note_type": note_type},
            )
        )

    async def record_fraud_flag(
        self,
        order_id: str,
        reason: str,
        actor: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> OrderHistoryEntry | None:
        """Record a fraud flag. Always critical, hidden from the customer."""
        return await self._record(
            OrderHistoryEntry(
                order_id=order_id,
                event_type=HistoryEventType.FRAUD_FLAG_RAISED,
                description=f"Fraud review flag raised: {reason}",
                actor=actor,
                source=HistorySource.SYSTEM if actor is None else HistorySource.ADMIN,
                priority=HistoryPriority.CRITICAL,
                is_customer_visible=False,
                requires_follow_up=True,
                follow_up_notes="Review order for potential fraud",
                metadata={"reason": reason, **(details or {})},
            )
        )

    async def _record(self, entry: OrderHistoryEntry) -> OrderHistoryEntry | None:
        try:
            await self.history_repo.append(entry)
        except Exception as e:
            logger.error(
                "Failed to record order history",
                order_id=entry.order_id,
                event_type=entry.event_type.value,
                error=str(e),
            )
            return None
        logger.debug(
            "Order history recorded",
            order_id=entry.order_id,
            event_type=entry.event_type.value,
        )
        return entry

    # -------------------------------------------------------------------------
    # Retrieval
    # -------------------------------------------------------------------------

    async def get_history(self, query: HistoryQuery | None = None) -> HistoryPage:
        """Get filtered, sorted and paginated history.

        Page size is capped at 100.
        """
        query = query or HistoryQuery()
        source = (
            await self.history_repo.list_for_order(query.order_id)
            if query.order_id
            else await self.history_repo.list_all()
        )
        entries = [e for e in source if query.matches(e)]
        entries.sort(key=lambda e: e.created_at, reverse=query.newest_first)

        page = max(query.page, 1)
        page_size = min(max(query.page_size, 1), MAX_PAGE_SIZE)
        start = (page - 1) * page_size
        return HistoryPage(
            entries=entries[start : start + page_size],
            total=len(entries),
            page=page,
            page_size=page_size,
        )

    async def get_customer_history(self, order_id: str) -> list[OrderHistoryEntry]:
        """Get the customer-visible timeline of an order, oldest first."""
        entries = await self.history_repo.list_for_order(order_id)
        return sorted(
            (e for e in entries if e.is_customer_visible),
            key=lambda e: e.created_at,
        )

    async def get_follow_up_events(self) -> list[OrderHistoryEntry]:
        entries = await self.history_repo.list_all()
        return sorted(
            (e for e in entries if e.requires_follow_up),
            key=lambda e: e.created_at,
            reverse=True,
        )

    async def get_critical_events(self, limit: int = 50) -> list[OrderHistoryEntry]:
        entries = await self.history_repo.list_all()
        critical = sorted(
            (e for e in entries if e.priority == HistoryPriority.CRITICAL),
            key=lambda e: e.created_at,
            reverse=True,
        )
        return critical[:limit]

    async def search(self, text: str, order_id: str | None = None) -> list[OrderHistoryEntry]:
        """Case-insensitive search over descriptions, actors and follow-up notes."""
        needle = text.lower()
        entries = (
            await self.history_repo.list_for_order(order_id)
            if order_id
            else await self.history_repo.list_all()
        )
        return [
            e
            for e in entries
            if needle in e.description.lower()
            or needle in (e.actor or "").lower()
            or needle in (e.follow_up_notes or "").lower()
        ]

    async def get_statistics(self, order_id: str | None = None) -> HistoryStatistics:
        entries = (
            await self.history_repo.list_for_order(order_id)
            if order_id
            else await self.history_repo.list_all()
        )
        return HistoryStatistics(
            total_events=len(entries),
            by_event_type=dict(Counter(e.event_type.value for e in entries)),
            by_priority=dict(Counter(e.priority.value for e in entries)),
            follow_up_count=sum(1 for e in entries if e.requires_follow_up),
            customer_visible_count=sum(1 for e in entries if e.is_customer_visible),
        )

    async def export_history(self, order_id: str | None = None, fmt: str = "json") -> str:
        """Export history for compliance.

        Args:
            order_id: Restrict to one order.
            fmt: ``json`` or ``csv``.

        Returns:
            Serialized entries, oldest first.

        Raises:
            ValueError: If the format is unknown.
        """
        entries = (
            await self.history_repo.list_for_order(order_id)
            if order_id
            else await self.history_repo.list_all()
        )
        entries.sort(key=lambda e: e.created_at)
        rows = [e.to_dict() for e in entries]

        if fmt == "json":
            return json.dumps(rows, indent=2)
        if fmt == "csv":
            buffer = io.StringIO()
            writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS, extrasaction="ignore")
            writer.writeheader()
            writer.writerows(rows)
            return buffer.getvalue()
        raise ValueError(f"Unsupported export format: {fmt}")
