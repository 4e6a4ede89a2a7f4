# schemas/domain.py
# ============================================================================
# SKILLNESTX PAYMENTS: DOMAIN MODELS
# ============================================================================
# Purpose: Entitlement, catalog and transaction entities
#
# - User owns its purchased courses and active subscription slot
# - Transactions are immutable apart from refund bookkeeping
# - Purchase context is a tagged union carried once per payment
# ============================================================================

import hashlib
import uuid
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# Major-unit money (rupees / dollars). Serialized as a JSON number.
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


def minor_to_major(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def major_to_minor(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))


class DomainModel(BaseModel):
    """camelCase on the wire, snake_case in Python"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"
    INSTRUCTOR = "instructor"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class SubscriptionName(str, Enum):
    BASIC = "Basic"
    PRO = "Pro"
    PREMIUM = "Premium"
    GIFT = "Gift"
    TEAM_PLAN = "Team Plan"


class SubscriptionType(str, Enum):
    PERSONAL = "Personal"
    TEAM = "Team"
    GIFT = "Gift"


class CourseCategory(str, Enum):
    FRONTEND = "Frontend"
    BACKEND = "Backend"
    MACHINE_LEARNING = "Machine Learning"
    ARTIFICIAL_INTELLIGENCE = "Artificial Intelligence"
    SYSTEM_DESIGN = "System Design"
    DATABASE = "Database"


class Currency(str, Enum):
    INR = "INR"
    USD = "USD"


class PurchaseType(str, Enum):
    COURSE = "course"
    SUBSCRIPTION = "subscription"
    CART = "cart"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    REFUNDED = "refunded"


class RefundStatus(str, Enum):
    PROCESSED = "processed"
    REFUNDED = "refunded"
    FAILED = "failed"

    @staticmethod
    def can_advance(current: Optional["RefundStatus"], new: "RefundStatus") -> bool:
        """Refund status only moves forward: none -> processed -> refunded, or -> failed."""
        if current == new:
            return False
        if current is None:
            return True
        if current == RefundStatus.PROCESSED:
            return new in (RefundStatus.REFUNDED, RefundStatus.FAILED)
        return False


SUBSCRIPTION_DURATIONS = (30, 180, 365)
DEFAULT_COURSE_DURATION_DAYS = 365


# ============================================================================
# SECTION 2: CATALOG
# ============================================================================

class QuizQuestion(DomainModel):
    question: str = Field(min_length=1)
    options: list[str] = Field(min_length=4, max_length=4)
    correct_answer: str

    @model_validator(mode="after")
    def _answer_is_an_option(self) -> "QuizQuestion":
        if self.correct_answer not in self.options:
            raise ValueError("correctAnswer must be one of the options")
        return self


class Lesson(DomainModel):
    id: str = Field(default_factory=new_id)
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)
    quiz: list[QuizQuestion] = Field(default_factory=list)


class Section(DomainModel):
    title: str = Field(min_length=1)
    lessons: list[Lesson] = Field(default_factory=list)


class Course(DomainModel):
    id: str = Field(default_factory=new_id)
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1)
    category: CourseCategory
    image_url: str = ""
    old_price: int = Field(ge=0)
    new_price: int = Field(ge=0)
    duration: int = Field(default=DEFAULT_COURSE_DURATION_DAYS, gt=0)
    syllabus: list[Section] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _prices_ordered(self) -> "Course":
        if self.old_price < self.new_price:
            raise ValueError("oldPrice must be greater than or equal to newPrice")
        return self

    @property
    def price_minor(self) -> int:
        return self.new_price * 100

    @property
    def total_lessons(self) -> int:
        return sum(len(section.lessons) for section in self.syllabus)

    def has_lesson(self, lesson_id: str) -> bool:
        return any(
            lesson.id == lesson_id
            for section in self.syllabus
            for lesson in section.lessons
        )


class Subscription(DomainModel):
    """Admin-defined subscription plan template"""
    id: str = Field(default_factory=new_id)
    name: SubscriptionName
    type: SubscriptionType
    old_price: int = Field(ge=0)
    new_price: int = Field(ge=0)
    duration: Literal[30, 180, 365]
    features: list[str] = Field(min_length=1)

    @model_validator(mode="after")
    def _prices_ordered(self) -> "Subscription":
        if self.old_price < self.new_price:
            raise ValueError("oldPrice must be greater than or equal to newPrice")
        return self

    @property
    def price_minor(self) -> int:
        return self.new_price * 100


# ============================================================================
# SECTION 3: PURCHASE CONTEXT (tagged union)
# ============================================================================

class CartItem(DomainModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    price: int = Field(gt=0)  # minor units


class CoursePurchase(DomainModel):
    purchase_type: Literal["course"] = "course"
    course_id: str

    def gateway_notes(self) -> dict[str, str]:
        return {"purchaseType": self.purchase_type, "courseId": self.course_id}


class SubscriptionPurchase(DomainModel):
    purchase_type: Literal["subscription"] = "subscription"
    subscription_id: str

    def gateway_notes(self) -> dict[str, str]:
        return {"purchaseType": self.purchase_type, "subscriptionId": self.subscription_id}


class CartPurchase(DomainModel):
    purchase_type: Literal["cart"] = "cart"
    items: list[CartItem] = Field(min_length=1)

    @property
    def total(self) -> int:
        return sum(item.price for item in self.items)

    @property
    def items_digest(self) -> str:
        """sha256 of the sorted item ids; fixed length whatever the cart size."""
        joined = ",".join(sorted(item.id for item in self.items))
        return hashlib.sha256(joined.encode()).hexdigest()

    def gateway_notes(self) -> dict[str, str]:
        # Razorpay caps each note value at 256 chars
        return {
            "purchaseType": self.purchase_type,
            "cartItemsDigest": self.items_digest,
            "cartItemCount": str(len(self.items)),
            "cartTotal": str(self.total),
        }


PurchaseContext = Annotated[
    Union[CoursePurchase, SubscriptionPurchase, CartPurchase],
    Field(discriminator="purchase_type"),
]


def notes_match(purchase: Union[CoursePurchase, SubscriptionPurchase, CartPurchase], notes: dict[str, Any]) -> bool:
    """True when gateway order notes describe the same purchase."""
    expected = purchase.gateway_notes()
    return all(str(notes.get(key, "")) == value for key, value in expected.items())


# ============================================================================
# SECTION 4: USER ENTITLEMENTS
# ============================================================================

class PurchasedCourse(DomainModel):
    course_id: str
    course_name: str
    start_date: datetime = Field(default_factory=utcnow)
    end_date: datetime
    duration: int
    completion_status: int = Field(default=0, ge=0, le=100)
    last_accessed: datetime = Field(default_factory=utcnow)


class ActiveSubscription(DomainModel):
    subscription_id: Optional[str] = None
    subscription_name: Optional[SubscriptionName] = None
    subscription_type: Optional[SubscriptionType] = None
    status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    duration: Optional[int] = None

    @model_validator(mode="after")
    def _active_is_complete(self) -> "ActiveSubscription":
        if self.status != SubscriptionStatus.ACTIVE:
            return self
        required = (
            self.subscription_id,
            self.subscription_name,
            self.subscription_type,
            self.duration,
            self.start_date,
            self.end_date,
        )
        if any(value is None for value in required):
            raise ValueError("An active subscription needs id, name, type, duration and dates")
        if self.end_date <= self.start_date:
            raise ValueError("Subscription endDate must be after startDate")
        return self

    @computed_field
    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE


class User(DomainModel):
    id: str = Field(default_factory=new_id)
    name: str = ""
    email: str
    role: Role = Role.USER
    is_banned: bool = False
    purchased_courses: list[PurchasedCourse] = Field(default_factory=list)
    active_subscription: ActiveSubscription = Field(default_factory=ActiveSubscription)
    transactions: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1  # Optimistic locking

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def has_course(self, course_id: str) -> bool:
        return any(entry.course_id == course_id for entry in self.purchased_courses)

    def with_course(self, course: Course, now: Optional[datetime] = None) -> "User":
        """Append a purchased course unless it is already present."""
        if self.has_course(course.id):
            return self
        now = now or utcnow()
        duration = course.duration or DEFAULT_COURSE_DURATION_DAYS
        entry = PurchasedCourse(
            course_id=course.id,
            course_name=course.title,
            start_date=now,
            end_date=now + timedelta(days=duration),
            duration=duration,
            last_accessed=now,
        )
        return self.model_copy(update={"purchased_courses": [*self.purchased_courses, entry]})

    def with_subscription(self, plan: Subscription, now: Optional[datetime] = None) -> "User":
        """Overwrite the subscription slot (last writer wins)."""
        now = now or utcnow()
        slot = ActiveSubscription(
            subscription_id=plan.id,
            subscription_name=plan.name,
            subscription_type=plan.type,
            status=SubscriptionStatus.ACTIVE,
            start_date=now,
            end_date=now + timedelta(days=plan.duration),
            duration=plan.duration,
        )
        return self.model_copy(update={"active_subscription": slot})

    def with_transaction(self, transaction_id: str) -> "User":
        if transaction_id in self.transactions:
            return self
        return self.model_copy(update={"transactions": [*self.transactions, transaction_id]})

    def without_course(self, course_id: str) -> "User":
        remaining = [e for e in self.purchased_courses if e.course_id != course_id]
        return self.model_copy(update={"purchased_courses": remaining})

    def without_subscription(self) -> "User":
        return self.model_copy(update={"active_subscription": ActiveSubscription()})

    def without_transaction(self, transaction_id: str) -> "User":
        remaining = [t for t in self.transactions if t != transaction_id]
        return self.model_copy(update={"transactions": remaining})


# ============================================================================
# SECTION 5: TRANSACTIONS
# ============================================================================

class Transaction(DomainModel):
    """One verified payment. Only refund bookkeeping changes after insert."""
    id: str = Field(default_factory=new_id)
    user_id: str
    payment_id: str
    order_id: str
    razorpay_signature: str
    amount: Money
    currency: Currency
    status: TransactionStatus = TransactionStatus.SUCCESSFUL
    purchase_type: PurchaseType
    course_id: Optional[str] = None
    subscription_id: Optional[str] = None
    cart_items: list[CartItem] = Field(default_factory=list)
    notes: dict[str, Any] = Field(default_factory=dict)
    refund_status: Optional[RefundStatus] = None
    refund_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _references_match_type(self) -> "Transaction":
        if self.purchase_type == PurchaseType.CART and not self.cart_items:
            raise ValueError("Cart transactions need at least one cart item")
        if self.purchase_type != PurchaseType.CART and self.cart_items:
            raise ValueError("Only cart transactions carry cart items")
        if self.purchase_type == PurchaseType.COURSE and not self.course_id:
            raise ValueError("Course transactions need a courseId")
        if self.purchase_type == PurchaseType.SUBSCRIPTION and not self.subscription_id:
            raise ValueError("Subscription transactions need a subscriptionId")
        return self

    @classmethod
    def from_purchase(
        cls,
        purchase: Union[CoursePurchase, SubscriptionPurchase, CartPurchase],
        **fields: Any,
    ) -> "Transaction":
        refs: dict[str, Any] = {"purchase_type": PurchaseType(purchase.purchase_type)}
        if isinstance(purchase, CoursePurchase):
            refs["course_id"] = purchase.course_id
        elif isinstance(purchase, SubscriptionPurchase):
            refs["subscription_id"] = purchase.subscription_id
        else:
            refs["cart_items"] = list(purchase.items)
        return cls(**refs, **fields)

    @property
    def purchase(self) -> Union[CoursePurchase, SubscriptionPurchase, CartPurchase]:
        if self.purchase_type == PurchaseType.COURSE:
            return CoursePurchase(course_id=self.course_id)
        if self.purchase_type == PurchaseType.SUBSCRIPTION:
            return SubscriptionPurchase(subscription_id=self.subscription_id)
        return CartPurchase(items=self.cart_items)

    @property
    def amount_minor(self) -> int:
        return major_to_minor(self.amount)

    def with_refund(
        self,
        refund_status: RefundStatus,
        refund_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
    ) -> "Transaction":
        return self.model_copy(update={
            "refund_status": refund_status,
            "refund_id": refund_id or self.refund_id,
            "status": status or self.status,
            "updated_at": utcnow(),
        })


# ============================================================================
# SECTION 6: LEARNING
# ============================================================================

class SavedCourse(DomainModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    course_id: str
    created_at: datetime = Field(default_factory=utcnow)


class UserProgress(DomainModel):
    user_id: str
    course_id: str
    completed_lessons: list[str] = Field(default_factory=list)
    is_completed: bool = False
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("completed_lessons")
    @classmethod
    def _dedupe(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    def with_lesson(self, lesson_id: str) -> "UserProgress":
        if lesson_id in self.completed_lessons:
            return self
        return self.model_copy(update={
            "completed_lessons": [*self.completed_lessons, lesson_id],
            "updated_at": utcnow(),
        })

    def mark_completed(self, now: Optional[datetime] = None) -> "UserProgress":
        now = now or utcnow()
        return self.model_copy(update={
            "is_completed": True,
            "completed_at": now,
            "updated_at": now,
        })

    def percentage(self, total_lessons: int) -> float:
        if not total_lessons:
            return 0.0
        return round(len(self.completed_lessons) / total_lessons * 100, 2)


# ============================================================================
# SECTION 7: AUDIT
# ============================================================================

class AuditEventType(str, Enum):
    TRANSACTION_CREATED = "transaction.created"
    ACCESS_GRANTED = "access.granted"
    ACCESS_REVOKED = "access.revoked"
    REFUND_REQUESTED = "refund.requested"
    REFUND_ISSUED = "refund.issued"
    REFUND_FAILED = "refund.failed"
    REFUND_STATUS_CHANGED = "refund.status_changed"
    WEBHOOK_RECEIVED = "webhook.received"


class AuditLogEntry(DomainModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    trace_id: str
    event_type: AuditEventType
    entity_type: str = "transaction"
    entity_id: str
    previous_state: Optional[dict] = None
    new_state: Optional[dict] = None
    metadata: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str = "system"  # "system", "webhook", "admin:<id>", "user:<id>"
