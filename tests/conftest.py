"""Shared fixtures: in-memory store, fake gateway, seeded catalog and users."""

import itertools
from typing import Optional

import httpx
import pytest

from api.dependencies import build_container
from api.server import create_app
from core.config import AuthConfig, EmailConfig, PaymentConfig, RazorpayConfig
from core.errors import GatewayError
from core.security import create_access_token
from schemas.domain import (
    Course,
    CourseCategory,
    Lesson,
    Role,
    Section,
    Subscription,
    SubscriptionName,
    SubscriptionType,
    User,
)
from services.access_engine import AccessEngine
from services.notifications import InMemoryEmailSender, NotificationService, TemplateManager
from services.payment_orchestrator import PaymentOrchestrator
from services.razorpay_client import (
    GatewayOrder,
    GatewayPayment,
    GatewayRefund,
    IPaymentGateway,
    sign_payment,
)
from services.refund_handler import RefundHandler
from storage.memory import InMemoryStore

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"


class FakeGateway(IPaymentGateway):
    """Records calls; orders and payments live in dicts the test can edit."""

    def __init__(self):
        self.orders: dict[str, GatewayOrder] = {}
        self.payments: dict[str, GatewayPayment] = {}
        self.calls: list[tuple] = []
        self.fail_with: Optional[GatewayError] = None
        self.refund_status = "processed"
        self._ids = itertools.count(1)

    def _maybe_fail(self, operation: str):
        if self.fail_with is not None:
            raise self.fail_with

    async def create_order(self, amount_minor, currency, receipt, notes):
        self.calls.append(("create_order", amount_minor, currency, receipt, notes))
        self._maybe_fail("create_order")
        order = GatewayOrder(
            id=f"order_{next(self._ids)}",
            amount=amount_minor,
            currency=currency,
            receipt=receipt,
            notes=notes,
        )
        self.orders[order.id] = order
        return order

    async def get_order(self, order_id):
        self.calls.append(("get_order", order_id))
        self._maybe_fail("get_order")
        if order_id not in self.orders:
            raise GatewayError("get_order", "The id provided does not exist", status_code=400)
        return self.orders[order_id]

    async def get_payment(self, payment_id):
        self.calls.append(("get_payment", payment_id))
        self._maybe_fail("get_payment")
        if payment_id not in self.payments:
            raise GatewayError("get_payment", "The id provided does not exist", status_code=400)
        return self.payments[payment_id]

    async def close(self):
        self.calls.append(("close",))

    async def refund(self, payment_id, amount_minor):
        self.calls.append(("refund", payment_id, amount_minor))
        self._maybe_fail("refund")
        return GatewayRefund(
            id=f"rfnd_{next(self._ids)}",
            payment_id=payment_id,
            amount=amount_minor,
            status=self.refund_status,
        )

    def capture(self, payment_id: str, order: GatewayOrder) -> None:
        self.payments[payment_id] = GatewayPayment(
            id=payment_id,
            amount=order.amount,
            currency=order.currency,
            status="captured",
            order_id=order.id,
        )

    def called(self, operation: str) -> bool:
        return any(call[0] == operation for call in self.calls)


# =============================================================================
# CONFIG
# =============================================================================

@pytest.fixture
def razorpay_config():
    return RazorpayConfig(key_id="rzp_test_key", key_secret=KEY_SECRET, webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def payment_config():
    return PaymentConfig()


@pytest.fixture
def auth_config():
    return AuthConfig(jwt_secret="test-jwt-secret")


@pytest.fixture
def email_config():
    return EmailConfig(sendgrid_api_key="", company_name="SkillNestX")


# =============================================================================
# SERVICES
# =============================================================================

@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def email_sender():
    return InMemoryEmailSender()


@pytest.fixture
def notifications(email_sender, email_config):
    return NotificationService(sender=email_sender, template_manager=TemplateManager(email_config))


@pytest.fixture
def engine(store, notifications, payment_config):
    return AccessEngine(store, notifications, payment_config)


@pytest.fixture
def orchestrator(gateway, engine, razorpay_config, payment_config):
    return PaymentOrchestrator(gateway, engine, razorpay_config, payment_config)


@pytest.fixture
def refunds(store, gateway, engine, notifications, razorpay_config, payment_config):
    return RefundHandler(store, gateway, engine, notifications, razorpay_config, payment_config)


# =============================================================================
# SEED DATA
# =============================================================================

@pytest.fixture
async def user(store):
    return await store.users.create(User(name="Asha Rao", email="asha@example.com"))


@pytest.fixture
async def other_user(store):
    return await store.users.create(User(name="Ravi Kumar", email="ravi@example.com"))


@pytest.fixture
async def admin(store):
    return await store.users.create(User(name="Admin", email="admin@skillnestx.com", role=Role.ADMIN))


@pytest.fixture
async def course(store):
    return await store.courses.create(Course(
        title="FastAPI in Depth",
        description="Build production APIs",
        category=CourseCategory.BACKEND,
        old_price=999,
        new_price=499,
        duration=180,
        syllabus=[
            Section(title="Basics", lessons=[
                Lesson(id="lesson-1", title="Routing", content="..."),
                Lesson(id="lesson-2", title="Dependencies", content="..."),
            ]),
            Section(title="Advanced", lessons=[
                Lesson(id="lesson-3", title="Middleware", content="..."),
            ]),
        ],
    ))


@pytest.fixture
async def cart_courses(store):
    first = await store.courses.create(Course(
        id="course-a", title="React Basics", description="Components",
        category=CourseCategory.FRONTEND, old_price=10, new_price=5,
    ))
    second = await store.courses.create(Course(
        id="course-b", title="SQL Basics", description="Queries",
        category=CourseCategory.DATABASE, old_price=10, new_price=7,
    ))
    return first, second


@pytest.fixture
async def pro_plan(store):
    return await store.subscriptions.create(Subscription(
        name=SubscriptionName.PRO,
        type=SubscriptionType.PERSONAL,
        old_price=1999,
        new_price=999,
        duration=180,
        features=["All courses"],
    ))


@pytest.fixture
async def basic_plan(store):
    return await store.subscriptions.create(Subscription(
        name=SubscriptionName.BASIC,
        type=SubscriptionType.PERSONAL,
        old_price=499,
        new_price=299,
        duration=30,
        features=["Starter courses"],
    ))


# =============================================================================
# HELPERS
# =============================================================================

def signed(order_id: str, payment_id: str) -> str:
    return sign_payment(KEY_SECRET, order_id, payment_id)


@pytest.fixture
def container(store, gateway, email_sender, razorpay_config, auth_config, payment_config, email_config):
    return build_container(
        store=store,
        gateway=gateway,
        email_sender=email_sender,
        razorpay_config=razorpay_config,
        auth_config=auth_config,
        payment_config=payment_config,
        email_config=email_config,
    )


@pytest.fixture
async def client(container):
    app = create_app(container, configure_logs=False)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http


@pytest.fixture
def auth_headers(auth_config):
    def build(account: User) -> dict:
        token = create_access_token(auth_config, account.id, account.email, account.role.value)
        return {"Authorization": f"Bearer {token}"}
    return build
