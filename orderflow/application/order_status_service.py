"""Order status engine.

Drives order lifecycle transitions and runs the automation rules bound
to each status. The rule table is passed in at construction and runs
in priority order; a rule failure never undoes the status change.
Failures of rules that touch inventory are handed back to the caller
as warnings, the rest are only logged.
"""

import secrets
import string
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog

from orderflow.application.inventory_service import InventoryLedger
from orderflow.application.order_history_service import HistoryQuery, OrderHistoryRecorder
from orderflow.application.results import ServiceResult
from orderflow.domain.base import utcnow
from orderflow.domain.entities import (
    HistoryEventType,
    HistorySource,
    InventorySource,
    Order,
    OrderHistoryEntry,
)
from orderflow.domain.exceptions import DomainError, NotFoundError, ValidationError
from orderflow.domain.state_machines import (
    OrderPaymentStatus,
    OrderStatus,
    ReservationStatus,
)
from orderflow.infrastructure.collaborators import Notifier
from orderflow.infrastructure.config import Settings, settings as default_settings
from orderflow.infrastructure.stores import OrderRepository

logger = structlog.get_logger()

CANCEL_IN_PROGRESS_WARNING = "Cancelling an in-progress order may require inventory adjustments"


# ============================================================================
# Automation Rules
# ============================================================================


@dataclass
class TransitionContext:
    """What a rule knows about the transition that triggered it."""

    engine: "OrderStatusEngine"
    previous_status: OrderStatus
    actor: str | None = None
    notes: str | None = None


RuleAction = Callable[[Order, TransitionContext], Awaitable[None]]


@dataclass(frozen=True)
class AutomationRule:
    """Side effect fired when an order enters a status.

    Attributes:
        name: Rule identifier used in logs and warnings.
        trigger_status: Status that fires the rule.
        action: Coroutine run with the updated order.
        affects_inventory: Whether failures are reported back as warnings.
        priority: Lower runs first; ties keep table order.
    """

    name: str
    trigger_status: OrderStatus
    action: RuleAction
    affects_inventory: bool = False
    priority: int = 100


def _tracking_number() -> str:
    alphabet = string.ascii_uppercase + string.digits
    return "TRK" + "".join(secrets.choice(alphabet) for _ in range(12))


def build_default_automation_rules(
    ledger: InventoryLedger,
    notifier: Notifier,
) -> list[AutomationRule]:
    """Build the standard rule table.

    Args:
        ledger: Inventory ledger for reservation and restock rules.
        notifier: Notification collaborator.

    Returns:
        Ordered list of rules.
    """

    def notification(event: str) -> RuleAction:
        async def send(order: Order, ctx: TransitionContext) -> None:
            await notifier.notify(
                event,
                {
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "user_id": order.user_id,
                    "status": order.status.value,
                    "previous_status": ctx.previous_status.value,
                    "total_cents": order.total_cents,
                    "currency": order.currency,
                    "tracking_number": order.tracking_number,
                },
            )

        return send

    async def finalize_reservations(order: Order, ctx: TransitionContext) -> None:
        active = await ledger.get_reservations(
            reference=order.checkout_session_id, status=ReservationStatus.ACTIVE
        )
        for reservation in active:
            (await ledger.consume(reservation.id, order.id, ctx.actor)).unwrap()

    async def create_tracking_record(order: Order, ctx: TransitionContext) -> None:
        if order.tracking_number:
            return
        carrier = order.carrier or (order.shipping_method.carrier if order.shipping_method else None)
        (
            await ctx.engine.update_shipping_info(
                order.id, _tracking_number(), carrier, actor=None
            )
        ).unwrap()

    async def restock_cancelled_order(order: Order, ctx: TransitionContext) -> None:
        reason = f"Order {order.order_number} cancelled"
        (await ledger.restock(order.id, reason, ctx.actor)).unwrap()
        (
            await ledger.release_for_reference(
                order.checkout_session_id, reason, InventorySource.ORDER
            )
        ).unwrap()

    return [
        AutomationRule(
            name="finalize_reservations",
            trigger_status=OrderStatus.CONFIRMED,
            action=finalize_reservations,
            affects_inventory=True,
            priority=10,
        ),
        AutomationRule(
            name="send_confirmation_notification",
            trigger_status=OrderStatus.CONFIRMED,
            action=notification("order.confirmed"),
            priority=50,
        ),
        AutomationRule(
            name="notify_warehouse",
            trigger_status=OrderStatus.PROCESSING,
            action=notification("warehouse.fulfilment_requested"),
            priority=50,
        ),
        AutomationRule(
            name="create_tracking_record",
            trigger_status=OrderStatus.SHIPPED,
            action=create_tracking_record,
            priority=10,
        ),
        AutomationRule(
            name="send_shipping_notification",
            trigger_status=OrderStatus.SHIPPED,
            action=notification("order.shipped"),
            priority=50,
        ),
        AutomationRule(
            name="send_delivery_notification",
            trigger_status=OrderStatus.DELIVERED,
            action=notification("order.delivered"),
            priority=50,
        ),
        AutomationRule(
            name="restock_cancelled_order",
            trigger_status=OrderStatus.CANCELLED,
            action=restock_cancelled_order,
            affects_inventory=True,
            priority=10,
        ),
        AutomationRule(
            name="send_cancellation_notification",
            trigger_status=OrderStatus.CANCELLED,
            action=notification("order.cancelled"),
            priority=50,
        ),
        AutomationRule(
            name="send_refund_notification",
            trigger_status=OrderStatus.REFUNDED,
            action=notification("order.refunded"),
            priority=50,
        ),
    ]


# ============================================================================
# Order Status Engine
# ============================================================================


@dataclass
class StatusChange:
    """Outcome of a successful status transition."""

    order: Order
    previous_status: OrderStatus
    rules_applied: list[str] = field(default_factory=list)
    rules_failed: list[str] = field(default_factory=list)


class OrderStatusEngine:
    """Application service that owns every order mutation after creation."""

    def __init__(
        self,
        order_repo: OrderRepository,
        history: OrderHistoryRecorder,
        rules: list[AutomationRule] | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize service.

        Args:
            order_repo: Order repository.
            history: Order history recorder.
            rules: Automation rule table.
            settings: Application settings.
        """
        self.order_repo = order_repo
        self.history = history
        self.rules = sorted(rules or [], key=lambda r: r.priority)
        self.settings = settings or default_settings

    def rules_for(self, status: OrderStatus) -> list[AutomationRule]:
        return [r for r in self.rules if r.trigger_status == status]

    @staticmethod
    def validate_status_transition(
        current: OrderStatus,
        new: OrderStatus,
        payment_status: OrderPaymentStatus | None = None,
    ) -> bool:
        return current.can_transition_to(new, payment_status)

    # -------------------------------------------------------------------------
    # Status Transitions
    # -------------------------------------------------------------------------

    async def update_order_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        actor: str | None = None,
        notes: str | None = None,
        source: HistorySource = HistorySource.SYSTEM,
    ) -> ServiceResult[StatusChange]:
        """Move an order to a new status and run its automation rules.

        Args:
            order_id: Order to update.
            new_status: Target status.
            actor: Who requested the change.
            notes: Free-text notes (kept as cancellation reason when cancelling).
            source: Origin recorded in order history.

        Returns:
            ServiceResult with the status change; rule failures that
            touched inventory are listed in ``warnings``.
        """
        try:
            order = await self._get_order(order_id)
            expected = order.version
            previous = order.transition_to(new_status, reason=notes)
            order = await self.order_repo.save(order, expected)
        except DomainError as e:
            logger.info(
                "Order status update rejected",
                order_id=order_id,
                target_status=new_status.value,
                error=e.message,
            )
            return ServiceResult.fail(e)

        logger.info(
            "Order status updated",
            order_id=order_id,
            from_status=previous.value,
            to_status=new_status.value,
            actor=actor,
        )
        await self.history.record_status_change(
            order.id, previous, new_status, actor, notes, source
        )

        change = StatusChange(order=order, previous_status=previous)
        warnings = await self._run_rules(
            order, TransitionContext(self, previous, actor, notes), change
        )
        if (
            new_status == OrderStatus.CANCELLED
            and previous.is_in_progress()
            and not any(r.affects_inventory for r in self.rules_for(OrderStatus.CANCELLED))
        ):
            warnings.append(CANCEL_IN_PROGRESS_WARNING)

        change.order = await self.order_repo.get(order.id) or order
        return ServiceResult.ok(change, warnings)

    async def bulk_update_status(
        self,
        order_ids: list[str],
        new_status: OrderStatus,
        actor: str | None = None,
        notes: str | None = None,
    ) -> dict[str, ServiceResult[StatusChange]]:
        """Apply the same transition to several orders independently."""
        results = {}
        for order_id in order_ids:
            results[order_id] = await self.update_order_status(order_id, new_status, actor, notes)
        succeeded = sum(1 for r in results.values() if r.success)
        logger.info(
            "Bulk order status update",
            target_status=new_status.value,
            succeeded=succeeded,
            failed=len(order_ids) - succeeded,
        )
        return results

    async def process_automated_progressions(self, now: datetime | None = None) -> list[str]:
        """Move confirmed orders that have waited long enough into processing.

        Returns:
            IDs of orders moved.
        """
        now = now or utcnow()
        cutoff = now - timedelta(hours=self.settings.auto_processing_after_hours)
        moved = []
        for order in await self.order_repo.list_confirmed_before(cutoff):
            result = await self.update_order_status(
                order.id,
                OrderStatus.PROCESSING,
                actor=None,
                notes="Automatically moved to processing",
                source=HistorySource.AUTOMATION,
            )
            if result.success:
                moved.append(order.id)
        return moved

    # -------------------------------------------------------------------------
    # Other Order Updates
    # -------------------------------------------------------------------------

    async def update_payment_status(
        self,
        order_id: str,
        payment_status: OrderPaymentStatus,
        actor: str | None = None,
        notes: str | None = None,
    ) -> ServiceResult[Order]:
        try:
            order = await self._get_order(order_id)
            if order.payment_status == payment_status:
                return ServiceResult.ok(order)
            expected = order.version
            previous = order.update_payment_status(payment_status)
            order = await self.order_repo.save(order, expected)
        except DomainError as e:
            return ServiceResult.fail(e)

        await self.history.record_payment_update(
            order.id,
            previous.value,
            payment_status.value,
            actor,
            {"notes": notes} if notes else None,
        )
        return ServiceResult.ok(order)

    async def update_shipping_info(
        self,
        order_id: str,
        tracking_number: str,
        carrier: str | None = None,
        actor: str | None = None,
    ) -> ServiceResult[Order]:
        try:
            if not tracking_number:
                raise ValidationError("Tracking number is required")
            order = await self._get_order(order_id)
            expected = order.version
            previous = order.tracking_number
            order.update_shipping(tracking_number, carrier)
            order = await self.order_repo.save(order, expected)
        except DomainError as e:
            return ServiceResult.fail(e)

        await self.history.record_shipping_update(
            order.id, tracking_number, order.carrier, actor, previous
        )
        return ServiceResult.ok(order)

    async def update_notes(
        self,
        order_id: str,
        notes: str,
        note_type: str = "admin",
        actor: str | None = None,
    ) -> ServiceResult[Order]:
        try:
            if note_type not in {"customer", "admin"}:
                raise ValidationError(f"Unknown note type: {note_type}")
            order = await self._get_order(order_id)
            expected = order.version
            previous = order.update_notes(note_type, notes)
            order = await self.order_repo.save(order, expected)
        except DomainError as e:
            return ServiceResult.fail(e)

        await self.history.record_notes_update(order.id, note_type, notes, actor, previous)
        return ServiceResult.ok(order)

    async def flag_for_fraud_review(
        self,
        order_id: str,
        reason: str,
        actor: str | None = None,
    ) -> ServiceResult[Order]:
        try:
            order = await self._get_order(order_id)
            expected = order.version
            order.flag_for_fraud()
            order = await self.order_repo.save(order, expected)
        except DomainError as e:
            return ServiceResult.fail(e)

        logger.warning("Order flagged for fraud review", order_id=order_id, reason=reason)
        await self.history.record_fraud_flag(order.id, reason, actor)
        return ServiceResult.ok(order)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_order(self, order_id: str) -> ServiceResult[Order]:
        try:
            return ServiceResult.ok(await self._get_order(order_id))
        except DomainError as e:
            return ServiceResult.fail(e)

    async def get_orders_by_status(
        self,
        status: OrderStatus,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Order], int]:
        return await self.order_repo.list_orders(status=status, page=page, page_size=page_size)

    async def get_status_timeline(self, order_id: str) -> list[OrderHistoryEntry]:
        """Get an order's status changes, oldest first."""
        page = await self.history.get_history(
            HistoryQuery(
                order_id=order_id,
                event_types=[HistoryEventType.STATUS_CHANGED],
                newest_first=False,
                page_size=100,
            )
        )
        return page.entries

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _get_order(self, order_id: str) -> Order:
        order = await self.order_repo.get(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def _run_rules(
        self,
        order: Order,
        ctx: TransitionContext,
        change: StatusChange,
    ) -> list[str]:
        warnings = []
        for rule in self.rules_for(order.status):
            # Earlier rules may have saved the order.
            order = await self.order_repo.get(order.id) or order
            try:
                await rule.action(order, ctx)
                change.rules_applied.append(rule.name)
            except Exception as e:
                change.rules_failed.append(rule.name)
                logger.warning(
                    "Automation rule failed",
                    rule=rule.name,
                    order_id=order.id,
                    error=str(e),
                )
                if rule.affects_inventory:
                    warnings.append(f"Automation rule '{rule.name}' failed: {e}")
        return warnings
