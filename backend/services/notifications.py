"""
Notification Service
====================
Transactional email for purchases and refunds.

- TemplateManager: notification type -> SendGrid dynamic template id + branding
- EmailSender implementations: SendGrid, disabled (logs and skips), in-memory
- NotificationService: builds a NotificationRecord, sends, records outcome

Callers treat email as best-effort: a failed send is re-raised here so the
caller decides how to report it, never to roll back a purchase.

pip install sendgrid structlog pydantic
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel, Field
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from core.config import EmailConfig
from schemas.domain import Currency, PurchaseType, Transaction, User, utcnow

logger = structlog.get_logger(component="notifications")


# =============================================================================
# ENUMS & MODELS
# =============================================================================

class NotificationType(str, Enum):
    COURSE_PURCHASE_CONFIRMATION = "course-purchase-confirmation"
    SUBSCRIPTION_CONFIRMATION = "subscription-confirmation"
    REFUND_PROCESSED = "refund-processed"
    REFUND_COMPLETED = "refund-completed"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class NotificationRecord(BaseModel):
    """Email notification tracking"""
    notification_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    trace_id: str
    notification_type: NotificationType
    recipient_email: str
    template_id: str
    template_data: dict = Field(default_factory=dict)

    status: DeliveryStatus = DeliveryStatus.PENDING
    message_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    last_error: Optional[str] = None


# =============================================================================
# FORMATTING
# =============================================================================

DURATION_LABELS = {30: "1 Month", 180: "6 Months", 365: "1 Year"}


def duration_text(days: Optional[int]) -> str:
    if not days:
        return "N/A"
    return DURATION_LABELS.get(days, f"{days} days")


def format_date(value: datetime) -> str:
    """DD-MM-YYYY at h:mm am"""
    hour = value.hour % 12 or 12
    suffix = "pm" if value.hour >= 12 else "am"
    return f"{value:%d-%m-%Y} at {hour}:{value:%M} {suffix}"


def format_amount(transaction: Transaction) -> str:
    symbol = "₹" if transaction.currency == Currency.INR else transaction.currency.value
    return f"{symbol} {transaction.amount:.2f}"


def display_name(user: User) -> str:
    return user.name or user.email.split("@")[0]


# =============================================================================
# TEMPLATE MANAGER
# =============================================================================

class TemplateManager:
    """
    Maps notification types to SendGrid dynamic templates.
    Template ids come from configuration; the defaults are placeholders.
    """

    DEFAULT_TEMPLATES = {
        NotificationType.COURSE_PURCHASE_CONFIRMATION: "d-course-purchase-confirmation",
        NotificationType.SUBSCRIPTION_CONFIRMATION: "d-subscription-confirmation",
        NotificationType.REFUND_PROCESSED: "d-refund-processed",
        NotificationType.REFUND_COMPLETED: "d-refund-completed",
    }

    def __init__(self, config: Optional[EmailConfig] = None):
        self.config = config or EmailConfig.from_env()

    def get_template_id(self, notification_type: NotificationType) -> str:
        configured = self.config.template_ids.get(notification_type.value)
        return configured or self.DEFAULT_TEMPLATES[notification_type]

    def get_branding(self) -> dict:
        return {
            "company_name": self.config.company_name,
            "support_email": self.config.support_email,
        }

    def build_template_data(self, notification_type: NotificationType, custom_data: dict) -> dict:
        return {
            **self.get_branding(),
            **custom_data,
            "notification_type": notification_type.value,
            "year": utcnow().year,
        }


# =============================================================================
# SENDERS
# =============================================================================

class EmailSender(ABC):

    enabled: bool = True

    @abstractmethod
    async def send(self, to_email: str, template_id: str, template_data: dict) -> Optional[str]:
        """Send one templated email. Returns the provider message id."""


class SendGridEmailSender(EmailSender):
    """SendGrid v3 mail send with dynamic templates."""

    def __init__(self, config: EmailConfig):
        self.config = config
        self._client = SendGridAPIClient(config.sendgrid_api_key)

    def _send_sync(self, to_email: str, template_id: str, template_data: dict) -> Optional[str]:
        message = Mail(from_email=self.config.from_email, to_emails=to_email)
        message.template_id = template_id
        message.dynamic_template_data = template_data
        response = self._client.send(message)
        return response.headers.get("X-Message-Id")

    async def send(self, to_email: str, template_id: str, template_data: dict) -> Optional[str]:
        # The sendgrid client is blocking
        return await asyncio.to_thread(self._send_sync, to_email, template_id, template_data)


class DisabledEmailSender(EmailSender):
    """Used when no SendGrid key is configured."""

    enabled = False

    async def send(self, to_email: str, template_id: str, template_data: dict) -> Optional[str]:
        return None


class InMemoryEmailSender(EmailSender):
    """Records sends; optionally fails every send with `error`."""

    def __init__(self, error: Optional[Exception] = None):
        self.sent: list[dict] = []
        self.error = error

    async def send(self, to_email: str, template_id: str, template_data: dict) -> Optional[str]:
        if self.error is not None:
            raise self.error
        message_id = f"mem-{uuid.uuid4().hex[:16]}"
        self.sent.append({
            "to": to_email,
            "template_id": template_id,
            "data": template_data,
            "message_id": message_id,
        })
        return message_id


def build_email_sender(config: EmailConfig) -> EmailSender:
    if config.enabled:
        return SendGridEmailSender(config)
    logger.warning("email_disabled", reason="SENDGRID_API_KEY not set")
    return DisabledEmailSender()


# =============================================================================
# NOTIFICATION SERVICE
# =============================================================================

class NotificationService:

    def __init__(
        self,
        sender: Optional[EmailSender] = None,
        template_manager: Optional[TemplateManager] = None,
    ):
        self.templates = template_manager or TemplateManager()
        self.sender = sender or build_email_sender(self.templates.config)

    async def send_purchase_confirmation(
        self,
        user: User,
        transaction: Transaction,
        item_name: str,
        duration_days: Optional[int],
        trace_id: str,
    ) -> NotificationRecord:
        if transaction.purchase_type == PurchaseType.SUBSCRIPTION:
            notification_type = NotificationType.SUBSCRIPTION_CONFIRMATION
        else:
            notification_type = NotificationType.COURSE_PURCHASE_CONFIRMATION

        return await self._send_notification(
            user=user,
            notification_type=notification_type,
            trace_id=trace_id,
            template_data={
                "name": display_name(user),
                "purchase_type": transaction.purchase_type.value.title(),
                "purchase_item": item_name or "Unknown Item",
                "amount": format_amount(transaction),
                "purchase_date": format_date(transaction.created_at),
                "duration": duration_text(duration_days),
                "transaction_id": transaction.id,
            },
        )

    async def send_refund_notification(
        self,
        notification_type: NotificationType,
        user: User,
        transaction: Transaction,
        item_type: str,
        item_name: str,
        trace_id: str,
    ) -> NotificationRecord:
        return await self._send_notification(
            user=user,
            notification_type=notification_type,
            trace_id=trace_id,
            template_data={
                "name": display_name(user),
                "item_type": item_type,
                "item_name": item_name or "N/A",
                "amount": f"{transaction.amount:.2f}",
                "currency": transaction.currency.value,
                "refund_date": format_date(utcnow()),
                "transaction_id": transaction.id,
                "refund_id": transaction.refund_id,
            },
        )

    async def _send_notification(
        self,
        user: User,
        notification_type: NotificationType,
        trace_id: str,
        template_data: dict,
    ) -> NotificationRecord:
        """Send email with template routing"""
        log = logger.bind(trace_id=trace_id)

        template_id = self.templates.get_template_id(notification_type)
        record = NotificationRecord(
            trace_id=trace_id,
            notification_type=notification_type,
            recipient_email=user.email,
            template_id=template_id,
            template_data=self.templates.build_template_data(notification_type, template_data),
        )

        if not self.sender.enabled:
            record.status = DeliveryStatus.SKIPPED
            log.info("notification_skipped", notification_type=notification_type.value)
            return record

        try:
            record.message_id = await self.sender.send(
                user.email, template_id, record.template_data
            )
            record.status = DeliveryStatus.SENT
            record.sent_at = utcnow()

            log.info("notification_sent",
                     notification_type=notification_type.value,
                     template_id=template_id,
                     message_id=record.message_id)
            return record

        except Exception as e:
            record.status = DeliveryStatus.FAILED
            record.last_error = str(e)

            log.error("notification_failed",
                      notification_type=notification_type.value,
                      error=str(e))
            raise
