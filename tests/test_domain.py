from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from schemas.api import Pagination, envelope
from schemas.domain import (
    ActiveSubscription,
    CartItem,
    CartPurchase,
    Course,
    CourseCategory,
    QuizQuestion,
    RefundStatus,
    SubscriptionStatus,
    UserProgress,
    minor_to_major,
    new_id,
    notes_match,
)
from services.notifications import duration_text, format_date


@pytest.mark.parametrize("current, new, allowed", [
    (None, RefundStatus.PROCESSED, True),
    (None, RefundStatus.FAILED, True),
    (RefundStatus.PROCESSED, RefundStatus.REFUNDED, True),
    (RefundStatus.PROCESSED, RefundStatus.FAILED, True),
    (RefundStatus.PROCESSED, RefundStatus.PROCESSED, False),
    (RefundStatus.REFUNDED, RefundStatus.PROCESSED, False),
    (RefundStatus.FAILED, RefundStatus.REFUNDED, False),
])
def test_refund_status_only_moves_forward(current, new, allowed):
    assert RefundStatus.can_advance(current, new) is allowed


def test_minor_to_major():
    assert minor_to_major(49900) == Decimal("499.00")
    assert minor_to_major(1) == Decimal("0.01")


def test_active_subscription_requires_complete_slot():
    with pytest.raises(ValidationError):
        ActiveSubscription(status=SubscriptionStatus.ACTIVE, subscription_id="p1")


def test_course_prices_must_be_ordered():
    with pytest.raises(ValidationError):
        Course(title="T", description="D", category=CourseCategory.BACKEND, old_price=100, new_price=200)


def test_quiz_answer_must_be_an_option():
    with pytest.raises(ValidationError):
        QuizQuestion(question="2+2?", options=["1", "2", "3", "5"], correct_answer="4")


def test_cart_notes_round_trip_through_gateway():
    cart = CartPurchase(items=[CartItem(id="a", name="A", price=500), CartItem(id="b", name="B", price=700)])
    notes = {**cart.gateway_notes(), "userId": "u1"}
    assert notes_match(cart, notes)
    assert not notes_match(cart, {**notes, "cartTotal": "1300"})


def test_large_cart_notes_stay_within_gateway_limit():
    items = [CartItem(id=new_id(), name=f"Course {i}", price=500) for i in range(10)]
    cart = CartPurchase(items=items)
    notes = {**cart.gateway_notes(), "userId": "u1"}

    assert max(len(value) for value in notes.values()) <= 256
    assert notes_match(CartPurchase(items=list(reversed(items))), notes)

    swapped = CartPurchase(items=[*items[:-1], CartItem(id=new_id(), name="Other", price=500)])
    assert not notes_match(swapped, notes)


def test_progress_percentage_and_dedupe():
    progress = UserProgress(user_id="u", course_id="c", completed_lessons=["l1", "l1", "l2"])
    assert progress.completed_lessons == ["l1", "l2"]
    assert progress.percentage(3) == 66.67
    assert progress.percentage(0) == 0.0
    assert progress.with_lesson("l1") is progress


@pytest.mark.parametrize("days, text", [
    (30, "1 Month"),
    (180, "6 Months"),
    (365, "1 Year"),
    (90, "90 days"),
    (None, "N/A"),
])
def test_duration_text(days, text):
    assert duration_text(days) == text


def test_format_date():
    assert format_date(datetime(2024, 3, 5, 14, 7, tzinfo=timezone.utc)).startswith("05-03-2024 at ")


def test_pagination_summary():
    page = Pagination(page=2, limit=10)
    assert page.offset == 10
    assert page.summary(21) == {"page": 2, "limit": 10, "total": 21, "pages": 3}


def test_envelope_shape():
    assert envelope(data=[1], trace_id="t", pagination={"page": 1}) == {
        "success": True, "data": [1], "pagination": {"page": 1}, "traceId": "t",
    }
