"""Expiry sweeper.

Abandons checkout sessions past their expiry and releases stock
reservations past theirs. Both sweeps are safe to run repeatedly and
concurrently with customer traffic: session writes are compare-and-swap
and releasing an already released reservation does nothing.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from orderflow.application.inventory_service import InventoryLedger
from orderflow.domain.base import utcnow
from orderflow.domain.exceptions import DomainError
from orderflow.domain.state_machines import CheckoutSessionStatus
from orderflow.infrastructure.stores import CheckoutSessionRepository

logger = structlog.get_logger()

SESSION_EXPIRED_REASON = "Checkout session expired"


@dataclass
class SweepReport:
    """What one sweep changed."""

    abandoned_sessions: list[str] = field(default_factory=list)
    released_reservations: list[str] = field(default_factory=list)
    skipped_sessions: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.abandoned_sessions or self.released_reservations)


class ExpirySweeper:
    """Periodic cleanup of expired sessions and reservations."""

    def __init__(
        self,
        session_repo: CheckoutSessionRepository,
        ledger: InventoryLedger,
    ) -> None:
        self.session_repo = session_repo
        self.ledger = ledger

    async def sweep(self, now: datetime | None = None) -> SweepReport:
        """Run one sweep.

        Sessions whose write loses a race (for example to a completion
        that finished meanwhile) are skipped and retried on the next
        sweep if still expired.

        Args:
            now: Reference time (defaults to the current time).

        Returns:
            SweepReport listing what changed.
        """
        now = now or utcnow()
        report = SweepReport()

        for session in await self.session_repo.list_expired(now):
            try:
                expected = session.version
                session.transition_to(CheckoutSessionStatus.ABANDONED, SESSION_EXPIRED_REASON)
                await self.session_repo.save(session, expected)
            except DomainError as e:
                logger.info("Skipped expired session", session_id=session.id, error=e.message)
                report.skipped_sessions.append(session.id)
                continue

            report.abandoned_sessions.append(session.id)
            released = await self.ledger.release_for_reference(session.id, SESSION_EXPIRED_REASON)
            report.released_reservations.extend(r.id for r in released.value or [])
            if not released.success:
                logger.warning(
                    "Failed to release reservations of expired session",
                    session_id=session.id,
                    error=released.error,
                )

        report.released_reservations.extend(await self.ledger.release_expired(now))

        if report.changed:
            logger.info(
                "Expiry sweep finished",
                abandoned_sessions=len(report.abandoned_sessions),
                released_reservations=len(report.released_reservations),
            )
        else:
            logger.debug("Expiry sweep found nothing to do")
        return report

    async def run(self, interval_seconds: float, stop_event: asyncio.Event) -> None:
        """Sweep every ``interval_seconds`` until ``stop_event`` is set."""
        logger.info("Expiry sweeper started", interval_seconds=interval_seconds)
        while not stop_event.is_set():
            try:
                await self.sweep()
            except Exception:
                logger.exception("Expiry sweep failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Expiry sweeper stopped")
