# api/routes.py
# ============================================================================
# SKILLNESTX PAYMENTS: HTTP ROUTES
# ============================================================================
# Thin handlers: parse, call one service, wrap the result in the success
# envelope. Errors propagate as DomainError and are rendered by the
# handlers registered in api/server.py.
# ============================================================================

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.dependencies import (
    ServiceContainer,
    get_container,
    get_current_user,
    get_pagination,
    get_trace_id,
    require_admin,
)
from core.errors import DomainError, ErrorCode
from schemas.api import (
    CourseCreateRequest,
    CourseIdRequest,
    CreateOrderRequest,
    LessonProgressRequest,
    Pagination,
    PaymentIdRequest,
    SubscriptionCreateRequest,
    VerifyPaymentRequest,
    envelope,
)
from schemas.domain import TransactionStatus, User
from services.refund_handler import WEBHOOK_SIGNATURE_HEADER

router = APIRouter()


def _int_param(value: Optional[str], name: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise DomainError(ErrorCode.INVALID_INPUT, f"{name} must be an integer")


def _status_param(value: Optional[str]) -> Optional[TransactionStatus]:
    if value is None or value == "":
        return None
    try:
        return TransactionStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in TransactionStatus)
        raise DomainError(ErrorCode.INVALID_INPUT, f"Status must be one of: {allowed}")


def _require_self_or_admin(user: User, user_id: str) -> None:
    if user.id != user_id and not user.is_admin:
        raise DomainError(ErrorCode.FORBIDDEN, "You can only view your own progress")


# =============================================================================
# PAYMENTS
# =============================================================================

@router.post("/api/payment/create-order")
async def create_order(
    body: CreateOrderRequest,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    order = await container.orchestrator.create_order(body, user, trace_id)
    # Checkout clients read the order fields at the top level
    return envelope(
        trace_id=trace_id,
        order_id=order.id,
        amount=order.amount,
        currency=order.currency,
    )


@router.post("/api/payment/verify-payment")
async def verify_payment(
    body: VerifyPaymentRequest,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    result = await container.orchestrator.verify_payment(body, user, trace_id)
    return envelope(
        data={
            "transactionId": result.transaction.id,
            "emailStatus": result.email_status.value,
            "alreadyProcessed": result.already_processed,
        },
        message="Payment already processed" if result.already_processed else "Payment verified successfully",
        trace_id=trace_id,
    )


# =============================================================================
# REFUNDS & WEBHOOKS
# =============================================================================

@router.post("/api/transactions/refund/request")
async def request_refund(
    body: PaymentIdRequest,
    admin: User = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    transaction = await container.refunds.request_refund(body.payment_id, admin, trace_id)
    return envelope(
        data={
            "transactionId": transaction.id,
            "paymentId": transaction.payment_id,
            "refundId": transaction.refund_id,
            "refundStatus": transaction.refund_status.value if transaction.refund_status else None,
        },
        message="Refund initiated successfully",
        trace_id=trace_id,
    )


@router.post("/api/transactions/razorpay-refund-webhook")
async def refund_webhook(
    request: Request,
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    body = await request.body()
    result = await container.refunds.handle_webhook(
        body, request.headers.get(WEBHOOK_SIGNATURE_HEADER), trace_id
    )
    return envelope(trace_id=trace_id, **result)


@router.post("/api/transactions/revoke")
async def revoke_access(
    body: PaymentIdRequest,
    admin: User = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    user = await container.engine.revoke_transaction_access(
        body.payment_id, trace_id, actor=f"admin:{admin.id}"
    )
    return envelope(
        data={"userId": user.id, "paymentId": body.payment_id},
        message="Access revoked successfully",
        trace_id=trace_id,
    )


# =============================================================================
# TRANSACTION REPORTS
# =============================================================================

@router.get("/api/transactions/user")
async def user_transactions(
    status: Optional[str] = Query(default=None),
    pagination: Pagination = Depends(get_pagination),
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    items, summary = await container.reports.user_history(
        user.id, pagination, _status_param(status)
    )
    return envelope(data=items, pagination=summary, trace_id=trace_id)


@router.get("/api/transactions/details/{payment_id}")
async def transaction_details(
    payment_id: str,
    _: User = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    return envelope(data=await container.reports.details(payment_id), trace_id=trace_id)


@router.get("/api/transactions/all")
async def all_transactions(
    pagination: Pagination = Depends(get_pagination),
    _: User = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    items, summary = await container.reports.all_transactions(pagination)
    return envelope(data=items, pagination=summary, trace_id=trace_id)


@router.get("/api/transactions/total")
async def total_transactions(
    year: Optional[str] = Query(default=None),
    _: User = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    data = await container.reports.yearly_totals(_int_param(year, "year"))
    return envelope(data=data, trace_id=trace_id)


@router.get("/api/transactions/recent")
async def recent_transactions(
    year: Optional[str] = Query(default=None),
    month: Optional[str] = Query(default=None),
    _: User = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    data = await container.reports.monthly_daily(
        _int_param(year, "year"), _int_param(month, "month")
    )
    return envelope(data=data, trace_id=trace_id)


@router.get("/api/transactions/search")
async def search_transactions(
    query: Optional[str] = Query(default=None),
    _: User = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    return envelope(data=await container.reports.search(query), trace_id=trace_id)


@router.get("/api/transactions/filter")
async def filter_transactions(
    status: Optional[str] = Query(default=None),
    _: User = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    parsed = _status_param(status)
    if parsed is None:
        raise DomainError(ErrorCode.INVALID_INPUT, "Status is required")
    return envelope(data=await container.reports.by_status(parsed), trace_id=trace_id)


@router.get("/api/transactions/audit/{payment_id}")
async def transaction_audit(
    payment_id: str,
    _: User = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    return envelope(data=await container.reports.audit_trail(payment_id), trace_id=trace_id)


# =============================================================================
# LEARNING
# =============================================================================

@router.get("/api/users/purchased-courses")
async def purchased_courses(
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    return envelope(data=container.learning.purchased_courses(user), trace_id=trace_id)


@router.post("/api/saved-courses/toggle")
async def toggle_saved_course(
    body: CourseIdRequest,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    saved = await container.learning.toggle_saved(user.id, body.course_id)
    return JSONResponse(
        status_code=201 if saved else 200,
        content=envelope(
            data={"courseId": body.course_id, "saved": saved},
            message="Course saved" if saved else "Course removed from saved courses",
            trace_id=trace_id,
        ),
    )


@router.get("/api/saved-courses")
async def saved_courses(
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    return envelope(data=await container.learning.list_saved(user.id), trace_id=trace_id)


@router.delete("/api/saved-courses/{course_id}")
async def remove_saved_course(
    course_id: str,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    await container.learning.remove_saved(user.id, course_id)
    return envelope(message="Course removed from saved courses", trace_id=trace_id)


@router.get("/api/progress/completed/{user_id}")
async def completed_courses(
    user_id: str,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    _require_self_or_admin(user, user_id)
    return envelope(data=await container.learning.completed_courses(user_id), trace_id=trace_id)


@router.get("/api/progress/in-progress/{user_id}")
async def in_progress_courses(
    user_id: str,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    _require_self_or_admin(user, user_id)
    return envelope(data=await container.learning.in_progress_courses(user_id), trace_id=trace_id)


@router.get("/api/progress/{course_id}")
async def course_progress(
    course_id: str,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    data = await container.learning.course_progress(user.id, course_id)
    return envelope(data=data, trace_id=trace_id)


@router.post("/api/progress")
async def record_lesson(
    body: LessonProgressRequest,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    data = await container.learning.record_lesson(user.id, body.course_id, body.lesson_id)
    return envelope(data=data, message="Progress updated", trace_id=trace_id)


@router.post("/api/progress/mark-completed")
async def mark_course_completed(
    body: CourseIdRequest,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    data = await container.learning.mark_completed(user.id, body.course_id)
    return envelope(data=data, message="Course marked as completed", trace_id=trace_id)


# =============================================================================
# CATALOG
# =============================================================================

@router.post("/api/courses", status_code=201)
async def create_course(
    body: CourseCreateRequest,
    _: User = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    course = await container.catalog.create_course(body)
    return envelope(
        data=course.model_dump(mode="json", by_alias=True),
        message="Course created successfully",
        trace_id=trace_id,
    )


@router.get("/api/courses")
async def list_courses(
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    courses = await container.catalog.list_courses()
    return envelope(
        data=[c.model_dump(mode="json", by_alias=True) for c in courses],
        trace_id=trace_id,
    )


@router.get("/api/courses/{course_id}")
async def get_course(
    course_id: str,
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    course = await container.catalog.get_course(course_id)
    return envelope(data=course.model_dump(mode="json", by_alias=True), trace_id=trace_id)


@router.post("/api/subscriptions", status_code=201)
async def create_subscription(
    body: SubscriptionCreateRequest,
    _: User = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    plan = await container.catalog.create_subscription(body)
    return envelope(
        data=plan.model_dump(mode="json", by_alias=True),
        message="Subscription created successfully",
        trace_id=trace_id,
    )


@router.get("/api/subscriptions")
async def list_subscriptions(
    container: ServiceContainer = Depends(get_container),
    trace_id: str = Depends(get_trace_id),
):
    plans = await container.catalog.list_subscriptions()
    return envelope(
        data=[p.model_dump(mode="json", by_alias=True) for p in plans],
        trace_id=trace_id,
    )
