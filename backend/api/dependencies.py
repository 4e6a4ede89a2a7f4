# api/dependencies.py
# ============================================================================
# SKILLNESTX PAYMENTS: SERVICE WIRING & REQUEST DEPENDENCIES
# ============================================================================
# build_container() assembles every service once per process; routes reach
# it through app.state and the FastAPI dependencies below.
# ============================================================================

from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import Depends, Query, Request

from core.config import (
    AuthConfig,
    EmailConfig,
    PaymentConfig,
    RazorpayConfig,
    ServerConfig,
    database_config,
    server_config,
)
from core.errors import DomainError, ErrorCode
from core.observability import current_trace_id
from core.security import decode_access_token, extract_bearer
from database import Database
from schemas.api import Pagination
from schemas.domain import User
from services.access_engine import AccessEngine
from services.catalog import CatalogService
from services.learning import LearningService
from services.notifications import EmailSender, NotificationService, TemplateManager, build_email_sender
from services.payment_orchestrator import PaymentOrchestrator
from services.razorpay_client import IPaymentGateway, RazorpayClient
from services.refund_handler import RefundHandler
from services.transaction_reports import TransactionReports
from storage.interfaces import IStore
from storage.memory import InMemoryStore
from storage.postgres import PostgresStore

logger = structlog.get_logger(component="dependencies")

MAX_PAGE_LIMIT = 100


# =============================================================================
# CONTAINER
# =============================================================================

@dataclass
class ServiceContainer:
    server: ServerConfig
    auth: AuthConfig
    razorpay: RazorpayConfig
    payment: PaymentConfig
    store: IStore
    gateway: IPaymentGateway
    notifications: NotificationService
    engine: AccessEngine
    orchestrator: PaymentOrchestrator
    refunds: RefundHandler
    learning: LearningService
    catalog: CatalogService
    reports: TransactionReports
    database: Optional[Database] = None

    @property
    def debug(self) -> bool:
        return self.server.DEBUG

    async def startup(self) -> None:
        if self.database is not None:
            await self.database.initialize()

    async def shutdown(self) -> None:
        await self.gateway.close()
        if self.database is not None:
            await self.database.close()


def build_container(
    store: Optional[IStore] = None,
    gateway: Optional[IPaymentGateway] = None,
    email_sender: Optional[EmailSender] = None,
    razorpay_config: Optional[RazorpayConfig] = None,
    auth_config: Optional[AuthConfig] = None,
    payment_config: Optional[PaymentConfig] = None,
    email_config: Optional[EmailConfig] = None,
    server: Optional[ServerConfig] = None,
) -> ServiceContainer:
    """Wire services from environment config; tests pass their own pieces."""
    razorpay_config = razorpay_config or RazorpayConfig.from_env()
    payment_config = payment_config or PaymentConfig.from_env()
    templates = TemplateManager(email_config or EmailConfig.from_env())

    database = None
    if store is None:
        if database_config.BACKEND == "memory":
            store = InMemoryStore()
        else:
            database = Database(database_config)
            store = PostgresStore(database)
    logger.info("store_selected", backend=type(store).__name__)

    gateway = gateway or RazorpayClient(razorpay_config)
    notifications = NotificationService(
        sender=email_sender or build_email_sender(templates.config),
        template_manager=templates,
    )
    engine = AccessEngine(store, notifications, payment_config)

    return ServiceContainer(
        server=server or server_config,
        auth=auth_config or AuthConfig.from_env(),
        razorpay=razorpay_config,
        payment=payment_config,
        store=store,
        gateway=gateway,
        notifications=notifications,
        engine=engine,
        orchestrator=PaymentOrchestrator(gateway, engine, razorpay_config, payment_config),
        refunds=RefundHandler(store, gateway, engine, notifications, razorpay_config, payment_config),
        learning=LearningService(store),
        catalog=CatalogService(store),
        reports=TransactionReports(store),
        database=database,
    )


# =============================================================================
# REQUEST DEPENDENCIES
# =============================================================================

def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_trace_id(request: Request) -> str:
    return getattr(request.state, "trace_id", None) or current_trace_id()


async def get_current_user(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> User:
    """Bearer token -> stored user. A deleted user is an auth failure (401)."""
    token = extract_bearer(request.headers.get("Authorization"))
    claims = decode_access_token(container.auth, token)

    user = await container.store.users.get(str(claims["userId"]))
    if user is None:
        raise DomainError(ErrorCode.USER_NOT_FOUND, "User not found", status=401)
    if user.is_banned:
        raise DomainError(ErrorCode.USER_BANNED, "Your account has been banned")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise DomainError(ErrorCode.FORBIDDEN, "Admin access required")
    return user


def _parse_page_param(value: Optional[str], default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise DomainError(ErrorCode.INVALID_PAGINATION, "Page and limit must be integers")


def get_pagination(
    page: Optional[str] = Query(default=None),
    limit: Optional[str] = Query(default=None),
) -> Pagination:
    page_no = _parse_page_param(page, 1)
    size = _parse_page_param(limit, 10)
    if page_no < 1 or size < 1 or size > MAX_PAGE_LIMIT:
        raise DomainError(
            ErrorCode.INVALID_PAGINATION,
            f"Page must be >= 1 and limit between 1 and {MAX_PAGE_LIMIT}",
        )
    return Pagination(page=page_no, limit=size)
