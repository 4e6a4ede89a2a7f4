# services/__init__.py
# ============================================================================
# SKILLNESTX PAYMENTS: SERVICES MODULE
# ============================================================================
# Gateway client, access engine, payment/refund flows, learning, catalog
# and reporting services
# ============================================================================

from services.razorpay_client import (
    IPaymentGateway,
    RazorpayClient,
    verify_payment_signature,
    verify_webhook_signature,
)

from services.notifications import (
    NotificationService,
    NotificationType,
    DeliveryStatus,
)

from services.access_engine import AccessEngine, GrantPayload, GrantResult
from services.payment_orchestrator import PaymentOrchestrator
from services.refund_handler import RefundHandler
from services.learning import LearningService
from services.catalog import CatalogService
from services.transaction_reports import TransactionReports

__all__ = [
    # Gateway
    "IPaymentGateway",
    "RazorpayClient",
    "verify_payment_signature",
    "verify_webhook_signature",
    # Notifications
    "NotificationService",
    "NotificationType",
    "DeliveryStatus",
    # Payments
    "AccessEngine",
    "GrantPayload",
    "GrantResult",
    "PaymentOrchestrator",
    "RefundHandler",
    # Learning & catalog
    "LearningService",
    "CatalogService",
    "TransactionReports",
]
