# schemas/api.py
# ============================================================================
# SKILLNESTX PAYMENTS: REQUEST MODELS
# ============================================================================
# Payment request bodies are accepted loosely (Any) and validated by the
# orchestrator in a fixed order, so each rule reports its own error code.
# The remaining bodies are validated by pydantic directly.
# ============================================================================

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from schemas.domain import (
    DEFAULT_COURSE_DURATION_DAYS,
    CourseCategory,
    Section,
    SubscriptionName,
    SubscriptionType,
)


class RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ============================================================================
# PAYMENTS
# ============================================================================

class CreateOrderRequest(RequestModel):
    amount: Any = None
    currency: Any = None
    purchase_type: Any = None
    course_id: Any = None
    subscription_id: Any = None
    cart_items: Any = None


class VerifyPaymentRequest(RequestModel):
    # Razorpay checkout hands these back in snake_case
    razorpay_payment_id: Any = Field(default=None, alias="razorpay_payment_id")
    razorpay_order_id: Any = Field(default=None, alias="razorpay_order_id")
    razorpay_signature: Any = Field(default=None, alias="razorpay_signature")
    purchase_type: Any = None
    course_id: Any = None
    subscription_id: Any = None
    cart_items: Any = None
    amount: Any = None
    currency: Any = None


class PaymentIdRequest(RequestModel):
    payment_id: str = Field(min_length=1, max_length=64)


# ============================================================================
# LEARNING
# ============================================================================

class CourseIdRequest(RequestModel):
    course_id: str = Field(min_length=1)


class LessonProgressRequest(RequestModel):
    course_id: str = Field(min_length=1)
    lesson_id: str = Field(min_length=1)


# ============================================================================
# QUERY PARAMETERS
# ============================================================================

class Pagination(BaseModel):
    page: int = 1
    limit: int = 10

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def summary(self, total: int) -> dict:
        pages = (total + self.limit - 1) // self.limit if self.limit else 0
        return {"page": self.page, "limit": self.limit, "total": total, "pages": pages}


def envelope(data: Any = None, trace_id: Optional[str] = None, message: Optional[str] = None, **extra: Any) -> dict:
    """Success body shared by every route."""
    body: dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    body.update(extra)
    if trace_id:
        body["traceId"] = trace_id
    return body


# ============================================================================
# CATALOG
# ============================================================================

class CourseCreateRequest(RequestModel):
    title: str
    description: str
    category: CourseCategory
    image_url: str = ""
    old_price: int
    new_price: int
    duration: int = DEFAULT_COURSE_DURATION_DAYS
    syllabus: list[Section] = Field(default_factory=list)


class SubscriptionCreateRequest(RequestModel):
    name: SubscriptionName
    type: SubscriptionType
    old_price: int
    new_price: int
    duration: int
    features: list[str]
