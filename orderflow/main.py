"""Orderflow worker entry point.

Wires the service graph against the database and the HTTP
collaborators and runs the expiry sweeper until interrupted.

Usage:
    orderflow-sweeper
    orderflow-sweeper --interval 30
    orderflow-sweeper --init-db
    orderflow-sweeper --once
"""

import argparse
import asyncio
import signal

import structlog

from orderflow.bootstrap import build_services
from orderflow.infrastructure.config import settings
from orderflow.infrastructure.database import build_engine, build_session_factory, init_models
from orderflow.infrastructure.http_clients import build_http_collaborators
from orderflow.infrastructure.logging_config import configure_logging
from orderflow.infrastructure.sql_repositories import sql_repositories

logger = structlog.get_logger()


async def create_tables() -> None:
    """Create database tables if they don't exist."""
    engine = build_engine()
    try:
        await init_models(engine)
    finally:
        await engine.dispose()
    logger.info("Database tables ready")


async def run(interval: float, once: bool = False) -> None:
    """Run the sweeper against the configured database and collaborators."""
    engine = build_engine()
    cart, payments, validator, notifier = build_http_collaborators(settings)
    services = build_services(
        settings,
        cart_provider=cart,
        payment_provider=payments,
        address_validator=validator,
        notifier=notifier,
        repositories=sql_repositories(build_session_factory(engine)),
    )
    try:
        if once:
            report = await services.sweeper.sweep()
            logger.info(
                "Single sweep complete",
                abandoned_sessions=len(report.abandoned_sessions),
                released_reservations=len(report.released_reservations),
            )
            return

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
        await services.sweeper.run(interval, stop_event)
    finally:
        for client in (cart, payments, validator, notifier):
            await client.close()
        await engine.dispose()


async def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Release expired checkout sessions and stock reservations",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.sweep_interval_seconds,
        help="Seconds between sweeps",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep and exit",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create database tables and exit",
    )
    args = parser.parse_args()

    configure_logging(settings.log_level, settings.log_json)
    logger.info("Starting orderflow worker", debug=settings.debug)

    if args.init_db:
        await create_tables()
        return
    await run(args.interval, once=args.once)


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
