"""Payment confirmation workflow.

Tracks confirmation of payments recorded by the external payment
collaborator, manually or through automated rules, and pushes the
result to the payment collaborator and the order. The confirmation is
the source of truth: downstream pushes that fail are logged and
reported as warnings, never reverted.
"""

import asyncio
from collections import Counter, defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum

import structlog

from orderflow.application.order_status_service import OrderStatusEngine
from orderflow.application.results import ServiceResult
from orderflow.domain.base import new_id, utcnow
from orderflow.domain.entities import (
    ConfirmationHistoryEntry,
    ConfirmationType,
    HistorySource,
    PaymentConfirmation,
)
from orderflow.domain.exceptions import (
    ConfirmationNotPendingError,
    DomainError,
    DuplicateConfirmationError,
    NotFoundError,
)
from orderflow.domain.state_machines import (
    ConfirmationStatus,
    OrderPaymentStatus,
    OrderStatus,
)
from orderflow.infrastructure.collaborators import PaymentProvider, PaymentRecord
from orderflow.infrastructure.config import Settings, settings as default_settings
from orderflow.infrastructure.stores import (
    ConfirmationHistoryRepository,
    PaymentConfirmationRepository,
)

logger = structlog.get_logger()

AUTOMATION_ACTOR = "automation"


# ============================================================================
# Automated Confirmation Rules
# ============================================================================


class ConfirmationRuleAction(str, Enum):
    """What an automated confirmation rule does when it matches."""

    AUTO_CONFIRM = "auto_confirm"
    MANUAL_REVIEW = "manual_review"


@dataclass(frozen=True)
class ConfirmationRule:
    """Entry in the automated confirmation rule table.

    Attributes:
        name: Rule identifier.
        priority: Lower wins; ties go to the rule declared first.
        predicate: Decides whether the rule matches a payment.
        action: What to do on a match.
    """

    name: str
    priority: int
    predicate: Callable[[PaymentRecord], bool]
    action: ConfirmationRuleAction


def build_default_confirmation_rules(settings: Settings | None = None) -> list[ConfirmationRule]:
    """Build the standard rule table from settings."""
    settings = settings or default_settings
    return [
        ConfirmationRule(
            name="cash_requires_manual_review",
            priority=1,
            predicate=lambda p: p.is_cash,
            action=ConfirmationRuleAction.MANUAL_REVIEW,
        ),
        ConfirmationRule(
            name="low_amount_auto_confirm",
            priority=2,
            predicate=lambda p: p.amount_cents <= settings.auto_confirm_max_amount_cents,
            action=ConfirmationRuleAction.AUTO_CONFIRM,
        ),
        ConfirmationRule(
            name="trusted_customer_auto_confirm",
            priority=3,
            predicate=lambda p: (p.trust_score or 0) >= settings.trusted_customer_min_score,
            action=ConfirmationRuleAction.AUTO_CONFIRM,
        ),
    ]


@dataclass
class RuleEvaluation:
    """Outcome of running the automated rules for one payment.

    Attributes:
        applied_rule: Name of the rule that was applied, if any.
        action: What the applied rule did.
        confirmation: Confirmation created by the applied rule.
        evaluated_rules: Rules that were evaluated but not applied.
    """

    applied_rule: str | None = None
    action: ConfirmationRuleAction | None = None
    confirmation: PaymentConfirmation | None = None
    evaluated_rules: list[str] = field(default_factory=list)


@dataclass
class ConfirmationStats:
    """Counts across all confirmations."""

    total: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    by_type: dict[str, int] = field(default_factory=dict)
    average_confirmation_minutes: float | None = None


# ============================================================================
# Payment Confirmation Workflow
# ============================================================================


class PaymentConfirmationWorkflow:
    """Application service for payment confirmation lifecycles."""

    def __init__(
        self,
        confirmation_repo: PaymentConfirmationRepository,
        history_repo: ConfirmationHistoryRepository,
        payment_provider: PaymentProvider,
        status_engine: OrderStatusEngine,
        rules: list[ConfirmationRule] | None = None,
    ) -> None:
        """Initialize service.

        Args:
            confirmation_repo: Confirmation repository.
            history_repo: Append-only confirmation history.
            payment_provider: Payment collaborator.
            status_engine: Order status engine for order pushes.
            rules: Automated confirmation rule table.
        """
        self.confirmation_repo = confirmation_repo
        self.history_repo = history_repo
        self.payment_provider = payment_provider
        self.status_engine = status_engine
        self.rules = sorted(rules or [], key=lambda r: r.priority)
        self._payment_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create_payment_confirmation(
        self,
        payment_id: str,
        confirmation_type: ConfirmationType = ConfirmationType.MANUAL,
        actor: str | None = None,
        notes: str | None = None,
        rule_name: str | None = None,
    ) -> ServiceResult[PaymentConfirmation]:
        """Open a confirmation for a payment.

        Refuses when the payment already has a pending or confirmed one.
        """
        try:
            async with self._payment_locks[payment_id]:
                payment = await self.payment_provider.get_payment(payment_id)
                if payment is None:
                    raise NotFoundError("Payment", payment_id)
                await self._ensure_no_open_confirmation(payment_id)

                confirmation = PaymentConfirmation(
                    id=new_id(),
                    payment_id=payment_id,
                    order_id=payment.order_id,
                    amount_cents=payment.amount_cents,
                    currency=payment.currency,
                    confirmation_type=confirmation_type,
                    created_by=actor,
                    notes=notes,
                    rule_name=rule_name,
                )
                await self.confirmation_repo.add(confirmation)
                await self._append_history(confirmation, "created", actor, notes)
        except DomainError as e:
            return ServiceResult.fail(e)

        logger.info(
            "Payment confirmation created",
            confirmation_id=confirmation.id,
            payment_id=payment_id,
            confirmation_type=confirmation_type.value,
        )
        return ServiceResult.ok(confirmation)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def confirm_payment(
        self,
        confirmation_id: str,
        actor: str | None = None,
        notes: str | None = None,
    ) -> ServiceResult[PaymentConfirmation]:
        """Confirm a pending payment and push the result downstream.

        Args:
            confirmation_id: Confirmation to confirm.
            actor: Who confirmed it.
            notes: Free-text notes.

        Returns:
            ServiceResult with the confirmed record; failed downstream
            pushes are listed in ``warnings``.
        """
        try:
            confirmation = await self._apply(
                confirmation_id,
                ConfirmationStatus.CONFIRMED,
                "confirmed",
                actor,
                notes,
                require_pending=True,
            )
        except DomainError as e:
            return ServiceResult.fail(e)

        warnings = await self._push_downstream(
            confirmation,
            actor,
            payment_status="confirmed",
            order_status=OrderStatus.CONFIRMED,
            order_payment_status=OrderPaymentStatus.CONFIRMED,
            notes=notes,
        )
        return ServiceResult.ok(confirmation, warnings)

    async def reject_payment(
        self,
        confirmation_id: str,
        actor: str | None = None,
        reason: str | None = None,
    ) -> ServiceResult[PaymentConfirmation]:
        try:
            confirmation = await self._apply(
                confirmation_id,
                ConfirmationStatus.REJECTED,
                "rejected",
                actor,
                reason,
                require_pending=True,
            )
        except DomainError as e:
            return ServiceResult.fail(e)

        warnings = await self._push_downstream(
            confirmation,
            actor,
            payment_status="rejected",
            order_payment_status=OrderPaymentStatus.FAILED,
            notes=reason,
        )
        return ServiceResult.ok(confirmation, warnings)

    async def mark_failed(
        self,
        confirmation_id: str,
        actor: str | None = None,
        reason: str | None = None,
    ) -> ServiceResult[PaymentConfirmation]:
        try:
            confirmation = await self._apply(
                confirmation_id, ConfirmationStatus.FAILED, "failed", actor, reason
            )
        except DomainError as e:
            return ServiceResult.fail(e)

        warnings = await self._push_downstream(
            confirmation,
            actor,
            payment_status="failed",
            order_payment_status=OrderPaymentStatus.FAILED,
            notes=reason,
        )
        return ServiceResult.ok(confirmation, warnings)

    async def retry_confirmation(
        self,
        confirmation_id: str,
        actor: str | None = None,
        notes: str | None = None,
    ) -> ServiceResult[PaymentConfirmation]:
        """Reopen a rejected or failed confirmation for another review."""
        try:
            current = await self._get(confirmation_id)
            async with self._payment_locks[current.payment_id]:
                await self._ensure_no_open_confirmation(current.payment_id)
                confirmation = await self._apply(
                    confirmation_id, ConfirmationStatus.PENDING, "retried", actor, notes
                )
        except DomainError as e:
            return ServiceResult.fail(e)
        return ServiceResult.ok(confirmation)

    async def cancel_confirmation(
        self,
        confirmation_id: str,
        actor: str | None = None,
        reason: str | None = None,
    ) -> ServiceResult[PaymentConfirmation]:
        try:
            confirmation = await self._apply(
                confirmation_id, ConfirmationStatus.CANCELLED, "cancelled", actor, reason
            )
        except DomainError as e:
            return ServiceResult.fail(e)

        warnings = await self._push_downstream(
            confirmation, actor, payment_status="cancelled", notes=reason
        )
        return ServiceResult.ok(confirmation, warnings)

    async def mark_paid(
        self,
        confirmation_id: str,
        actor: str | None = None,
        notes: str | None = None,
    ) -> ServiceResult[PaymentConfirmation]:
        """Record that a confirmed payment's funds were collected."""
        try:
            confirmation = await self._apply(
                confirmation_id, ConfirmationStatus.PAID, "paid", actor, notes
            )
        except DomainError as e:
            return ServiceResult.fail(e)

        warnings = await self._push_downstream(
            confirmation,
            actor,
            payment_status="paid",
            order_payment_status=OrderPaymentStatus.PAID,
            notes=notes,
        )
        return ServiceResult.ok(confirmation, warnings)

    async def refund_payment(
        self,
        confirmation_id: str,
        actor: str | None = None,
        reason: str | None = None,
    ) -> ServiceResult[PaymentConfirmation]:
        """Refund a paid payment and move the order to refunded."""
        try:
            confirmation = await self._apply(
                confirmation_id, ConfirmationStatus.REFUNDED, "refunded", actor, reason
            )
        except DomainError as e:
            return ServiceResult.fail(e)

        warnings = await self._push_downstream(
            confirmation,
            actor,
            payment_status="refunded",
            order_status=OrderStatus.REFUNDED,
            order_payment_status=OrderPaymentStatus.REFUNDED,
            notes=reason,
        )
        return ServiceResult.ok(confirmation, warnings)

    # -------------------------------------------------------------------------
    # Automated Rules
    # -------------------------------------------------------------------------

    async def process_automated_confirmation_rules(
        self, payment_id: str
    ) -> ServiceResult[RuleEvaluation]:
        """Apply the highest-priority matching rule to a payment.

        Rules are evaluated in priority order and at most one is applied.
        When nothing matches, the evaluated rule names are returned
        without error.
        """
        try:
            payment = await self.payment_provider.get_payment(payment_id)
            if payment is None:
                raise NotFoundError("Payment", payment_id)
        except DomainError as e:
            return ServiceResult.fail(e)

        evaluation = RuleEvaluation()
        matched: ConfirmationRule | None = None
        for rule in self.rules:
            if rule.predicate(payment):
                matched = rule
                break
            evaluation.evaluated_rules.append(rule.name)

        if matched is None:
            logger.info("No automated confirmation rule matched", payment_id=payment_id)
            return ServiceResult.ok(evaluation)

        evaluation.applied_rule = matched.name
        evaluation.action = matched.action
        logger.info(
            "Automated confirmation rule matched",
            payment_id=payment_id,
            rule=matched.name,
            action=matched.action.value,
        )

        if matched.action == ConfirmationRuleAction.MANUAL_REVIEW:
            created = await self.create_payment_confirmation(
                payment_id,
                ConfirmationType.MANUAL,
                actor=AUTOMATION_ACTOR,
                notes=f"Routed to manual review by rule {matched.name}",
                rule_name=matched.name,
            )
            if not created.success:
                return replace(created, value=evaluation)
            evaluation.confirmation = created.value
            return ServiceResult.ok(evaluation)

        created = await self.create_payment_confirmation(
            payment_id,
            ConfirmationType.AUTOMATED,
            actor=AUTOMATION_ACTOR,
            notes=f"Auto-confirmed by rule {matched.name}",
            rule_name=matched.name,
        )
        if not created.success:
            return replace(created, value=evaluation)
        confirmed = await self.confirm_payment(
            created.value.id, actor=AUTOMATION_ACTOR, notes=f"Rule {matched.name}"
        )
        evaluation.confirmation = confirmed.value or created.value
        if not confirmed.success:
            return replace(confirmed, value=evaluation)
        return ServiceResult.ok(evaluation, confirmed.warnings)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_confirmation(self, confirmation_id: str) -> ServiceResult[PaymentConfirmation]:
        try:
            return ServiceResult.ok(await self._get(confirmation_id))
        except DomainError as e:
            return ServiceResult.fail(e)

    async def get_confirmations_by_payment(self, payment_id: str) -> list[PaymentConfirmation]:
        return await self.confirmation_repo.list_by_payment(payment_id)

    async def get_confirmation_history(self, confirmation_id: str) -> list[ConfirmationHistoryEntry]:
        return await self.history_repo.list_for_confirmation(confirmation_id)

    async def get_stats(self) -> ConfirmationStats:
        confirmations = await self.confirmation_repo.list_all()
        durations = [
            (c.confirmed_at - c.created_at).total_seconds() / 60
            for c in confirmations
            if c.confirmed_at is not None
        ]
        return ConfirmationStats(
            total=len(confirmations),
            by_status=dict(Counter(c.confirmation_status.value for c in confirmations)),
            by_type=dict(Counter(c.confirmation_type.value for c in confirmations)),
            average_confirmation_minutes=(
                round(sum(durations) / len(durations), 2) if durations else None
            ),
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _get(self, confirmation_id: str) -> PaymentConfirmation:
        confirmation = await self.confirmation_repo.get(confirmation_id)
        if confirmation is None:
            raise NotFoundError("PaymentConfirmation", confirmation_id)
        return confirmation

    async def _ensure_no_open_confirmation(self, payment_id: str) -> None:
        for existing in await self.confirmation_repo.list_by_payment(payment_id):
            if existing.confirmation_status.is_open():
                raise DuplicateConfirmationError(payment_id, existing.id)

    async def _apply(
        self,
        confirmation_id: str,
        target: ConfirmationStatus,
        action: str,
        actor: str | None,
        notes: str | None,
        require_pending: bool = False,
    ) -> PaymentConfirmation:
        """Read, validate, write and log one status change.

        History is appended only after the status write succeeds.
        """
        confirmation = await self._get(confirmation_id)
        if require_pending and confirmation.confirmation_status != ConfirmationStatus.PENDING:
            raise ConfirmationNotPendingError(
                confirmation_id, confirmation.confirmation_status.value
            )
        expected = confirmation.version
        previous = confirmation.transition_to(target)
        if target == ConfirmationStatus.CONFIRMED:
            confirmation.confirmed_by = actor
            confirmation.confirmed_at = utcnow()
        elif target == ConfirmationStatus.REJECTED:
            confirmation.rejection_reason = notes
        if notes:
            confirmation.notes = notes
        confirmation = await self.confirmation_repo.save(confirmation, expected)
        await self._append_history(confirmation, action, actor, notes)

        logger.info(
            "Payment confirmation updated",
            confirmation_id=confirmation_id,
            from_status=previous.value,
            to_status=target.value,
            actor=actor,
        )
        return confirmation

    async def _append_history(
        self,
        confirmation: PaymentConfirmation,
        action: str,
        actor: str | None,
        notes: str | None,
    ) -> None:
        await self.history_repo.append(
            ConfirmationHistoryEntry(
                confirmation_id=confirmation.id,
                action=action,
                status=confirmation.confirmation_status,
                actor=actor,
                notes=notes,
            )
        )

    async def _push_downstream(
        self,
        confirmation: PaymentConfirmation,
        actor: str | None,
        payment_status: str,
        order_status: OrderStatus | None = None,
        order_payment_status: OrderPaymentStatus | None = None,
        notes: str | None = None,
    ) -> list[str]:
        """Propagate a confirmation change. Failures become warnings."""
        warnings = []
        log = logger.bind(confirmation_id=confirmation.id, payment_id=confirmation.payment_id)

        try:
            await self.payment_provider.update_payment_status(
                confirmation.payment_id, payment_status, actor
            )
        except Exception as e:
            log.warning("Failed to update payment status", error=str(e))
            warnings.append(f"Payment status update failed: {e}")

        if confirmation.order_id is None:
            return warnings

        # Order status goes first: a refund is only allowed while the
        # order's payment status is still paid.
        if order_status is not None:
            try:
                result = await self.status_engine.update_order_status(
                    confirmation.order_id,
                    order_status,
                    actor,
                    notes,
                    source=HistorySource.PAYMENT,
                )
                if not result.success:
                    log.warning(
                        "Order status push failed",
                        order_id=confirmation.order_id,
                        error=result.error,
                    )
                    warnings.append(f"Order status update failed: {result.error}")
                else:
                    warnings.extend(result.warnings)
            except Exception as e:
                log.warning("Order status push failed", order_id=confirmation.order_id, error=str(e))
                warnings.append(f"Order status update failed: {e}")

        if order_payment_status is not None:
            try:
                result = await self.status_engine.update_payment_status(
                    confirmation.order_id, order_payment_status, actor, notes
                )
                if not result.success:
                    log.warning(
                        "Order payment status push failed",
                        order_id=confirmation.order_id,
                        error=result.error,
                    )
                    warnings.append(f"Order payment status update failed: {result.error}")
            except Exception as e:
                log.warning(
                    "Order payment status push failed",
                    order_id=confirmation.order_id,
                    error=str(e),
                )
                warnings.append(f"Order payment status update failed: {e}")

        return warnings
