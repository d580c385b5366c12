"""Application layer module.

Contains application services (use cases) that orchestrate
domain logic and infrastructure.
"""

from orderflow.application.checkout_service import (
    CheckoutSessionManager,
    SessionPatch,
    StepValidation,
)
from orderflow.application.expiry_service import ExpirySweeper, SweepReport
from orderflow.application.inventory_service import InventoryLedger
from orderflow.application.order_factory import OrderFactory
from orderflow.application.order_history_service import HistoryQuery, OrderHistoryRecorder
from orderflow.application.order_status_service import (
    AutomationRule,
    OrderStatusEngine,
    build_default_automation_rules,
)
from orderflow.application.payment_confirmation_service import (
    ConfirmationRule,
    PaymentConfirmationWorkflow,
    build_default_confirmation_rules,
)
from orderflow.application.results import ServiceResult

__all__ = [
    "AutomationRule",
    "CheckoutSessionManager",
    "ConfirmationRule",
    "ExpirySweeper",
    "HistoryQuery",
    "InventoryLedger",
    "OrderFactory",
    "OrderHistoryRecorder",
    "OrderStatusEngine",
    "PaymentConfirmationWorkflow",
    "ServiceResult",
    "SessionPatch",
    "StepValidation",
    "SweepReport",
    "build_default_automation_rules",
    "build_default_confirmation_rules",
]
