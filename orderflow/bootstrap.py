"""Service graph wiring.

Builds every application service over one set of repositories and
collaborators. Tests and local runs use the in-memory defaults; the
sweeper process passes the SQL repositories and the HTTP clients.
"""

from dataclasses import dataclass

from orderflow.application.checkout_service import CheckoutSessionManager
from orderflow.application.expiry_service import ExpirySweeper
from orderflow.application.inventory_service import InventoryLedger
from orderflow.application.order_factory import OrderFactory
from orderflow.application.order_history_service import OrderHistoryRecorder
from orderflow.application.order_status_service import (
    OrderStatusEngine,
    build_default_automation_rules,
)
from orderflow.application.payment_confirmation_service import (
    PaymentConfirmationWorkflow,
    build_default_confirmation_rules,
)
from orderflow.infrastructure.collaborators import (
    AddressValidator,
    CartProvider,
    Notifier,
    PaymentProvider,
)
from orderflow.infrastructure.config import Settings, settings as default_settings
from orderflow.infrastructure.fakes import (
    InMemoryCartProvider,
    InMemoryPaymentProvider,
    RecordingNotifier,
    RequiredFieldsAddressValidator,
)
from orderflow.infrastructure.repositories import in_memory_repositories
from orderflow.infrastructure.stores import (
    CheckoutSessionRepository,
    OrderRepository,
    Repositories,
)


@dataclass
class Services:
    """Every application service plus the collaborators they share."""

    settings: Settings
    cart_provider: CartProvider
    payment_provider: PaymentProvider
    address_validator: AddressValidator
    notifier: Notifier
    session_repo: CheckoutSessionRepository
    order_repo: OrderRepository
    ledger: InventoryLedger
    history: OrderHistoryRecorder
    order_factory: OrderFactory
    checkout: CheckoutSessionManager
    status_engine: OrderStatusEngine
    payments: PaymentConfirmationWorkflow
    sweeper: ExpirySweeper


def build_services(
    settings: Settings | None = None,
    cart_provider: CartProvider | None = None,
    payment_provider: PaymentProvider | None = None,
    address_validator: AddressValidator | None = None,
    notifier: Notifier | None = None,
    repositories: Repositories | None = None,
) -> Services:
    """Wire the service graph.

    Args:
        settings: Application settings (defaults to the module settings).
        cart_provider: Cart collaborator (defaults to in-memory).
        payment_provider: Payment collaborator (defaults to in-memory).
        address_validator: Address validator (defaults to required-fields check).
        notifier: Notification collaborator (defaults to a recorder).
        repositories: Storage backend (defaults to in-memory).

    Returns:
        Services sharing one set of repositories.
    """
    settings = settings or default_settings
    cart_provider = cart_provider or InMemoryCartProvider()
    payment_provider = payment_provider or InMemoryPaymentProvider()
    address_validator = address_validator or RequiredFieldsAddressValidator()
    notifier = notifier or RecordingNotifier()

    repositories = repositories or in_memory_repositories()
    session_repo = repositories.sessions
    order_repo = repositories.orders

    ledger = InventoryLedger(
        repositories.inventory,
        repositories.reservations,
        repositories.inventory_history,
        notifier=notifier,
        settings=settings,
    )
    history = OrderHistoryRecorder(repositories.order_history)
    order_factory = OrderFactory(
        session_repo,
        order_repo,
        cart_provider,
        ledger,
        history,
        settings=settings,
    )
    status_engine = OrderStatusEngine(
        order_repo,
        history,
        rules=build_default_automation_rules(ledger, notifier),
        settings=settings,
    )

    return Services(
        settings=settings,
        cart_provider=cart_provider,
        payment_provider=payment_provider,
        address_validator=address_validator,
        notifier=notifier,
        session_repo=session_repo,
        order_repo=order_repo,
        ledger=ledger,
        history=history,
        order_factory=order_factory,
        checkout=CheckoutSessionManager(
            session_repo,
            cart_provider,
            address_validator,
            ledger,
            order_factory,
            settings=settings,
        ),
        status_engine=status_engine,
        payments=PaymentConfirmationWorkflow(
            repositories.confirmations,
            repositories.confirmation_history,
            payment_provider,
            status_engine,
            rules=build_default_confirmation_rules(settings),
        ),
        sweeper=ExpirySweeper(session_repo, ledger),
    )
