import asyncio
import hashlib
import hmac
import json

import pytest

from conftest import WEBHOOK_SECRET
from core.errors import DomainError, ErrorCode, GatewayError
from schemas.domain import (
    AuditEventType,
    CoursePurchase,
    Currency,
    RefundStatus,
    TransactionStatus,
)
from services.access_engine import GrantPayload
from services.razorpay_client import GatewayOrder
from services.refund_handler import map_refund_status


@pytest.fixture
async def purchase(engine, gateway, user, course):
    """A verified course purchase with a captured gateway payment."""
    result = await engine.create_transaction_and_grant_access(
        GrantPayload(
            user_id=user.id,
            payment_id="pay_1",
            order_id="order_1",
            signature="sig",
            amount_minor=49900,
            currency=Currency.INR,
            purchase=CoursePurchase(course_id=course.id),
        ),
        "t0",
    )
    gateway.capture("pay_1", GatewayOrder(id="order_1", amount=49900, currency="INR"))
    return result.transaction


def webhook_body(event: str, payment_id="pay_1", refund_id="rfnd_9") -> bytes:
    return json.dumps({
        "event": event,
        "payload": {"refund": {"entity": {"id": refund_id, "payment_id": payment_id, "status": "processed"}}},
    }).encode()


def sign_body(body: bytes) -> str:
    return hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()


# =============================================================================
# ADMIN REFUND
# =============================================================================

async def test_refund_issues_gateway_refund_then_revokes(refunds, store, gateway, user, admin, course, purchase, email_sender):
    updated = await refunds.request_refund("pay_1", admin, "t1")

    assert ("refund", "pay_1", 49900) in gateway.calls
    assert updated.refund_status == RefundStatus.PROCESSED
    assert updated.refund_id.startswith("rfnd_")
    assert updated.status == TransactionStatus.SUCCESSFUL

    stored_user = await store.users.get(user.id)
    assert not stored_user.has_course(course.id)
    assert purchase.id not in stored_user.transactions

    events = [e.event_type for e in await store.audit.get_by_entity_id("pay_1")]
    assert AuditEventType.REFUND_REQUESTED in events
    assert events[-2:] == [AuditEventType.ACCESS_REVOKED, AuditEventType.REFUND_ISSUED]
    assert email_sender.sent[-1]["template_id"] == "d-refund-processed"


async def test_concurrent_refunds_issue_one_gateway_refund(refunds, gateway, admin, purchase):
    results = await asyncio.gather(
        refunds.request_refund("pay_1", admin, "t1"),
        refunds.request_refund("pay_1", admin, "t2"),
        return_exceptions=True,
    )

    errors = [r for r in results if isinstance(r, DomainError)]
    assert len(errors) == 1
    assert errors[0].code == ErrorCode.REFUND_ALREADY_PROCESSED
    assert [c for c in gateway.calls if c[0] == "refund"] == [("refund", "pay_1", 49900)]
    assert refunds._payment_locks == {}


async def test_payment_locks_are_released_after_webhooks(refunds, purchase):
    for event in ("refund.processed", "refund.completed"):
        body = webhook_body(event)
        await refunds.handle_webhook(body, sign_body(body), "t1")
    body = webhook_body("refund.processed", payment_id="pay_unknown")
    with pytest.raises(DomainError):
        await refunds.handle_webhook(body, sign_body(body), "t2")

    assert refunds._payment_locks == {}


async def test_refund_on_processed_transaction_skips_gateway(refunds, store, gateway, admin, purchase):
    await store.transactions.update_refund(purchase.with_refund(RefundStatus.PROCESSED, "rfnd_old"))
    gateway.calls.clear()

    with pytest.raises(DomainError) as exc:
        await refunds.request_refund("pay_1", admin, "t1")

    assert exc.value.code == ErrorCode.REFUND_ALREADY_PROCESSED
    assert exc.value.status_code == 409
    assert gateway.calls == []


async def test_refund_unknown_payment(refunds, admin):
    with pytest.raises(DomainError) as exc:
        await refunds.request_refund("pay_missing", admin, "t1")
    assert exc.value.code == ErrorCode.TRANSACTION_NOT_FOUND


async def test_refund_requires_successful_transaction(refunds, store, admin, purchase):
    await store.transactions.update_refund(
        purchase.model_copy(update={"status": TransactionStatus.FAILED})
    )
    with pytest.raises(DomainError) as exc:
        await refunds.request_refund("pay_1", admin, "t1")
    assert exc.value.code == ErrorCode.INVALID_STATUS


async def test_gateway_failure_keeps_access(refunds, store, gateway, user, admin, course, purchase):
    gateway.fail_with = GatewayError("refund", "The payment has been fully refunded already", status_code=400)

    with pytest.raises(DomainError) as exc:
        await refunds.request_refund("pay_1", admin, "t1")

    assert exc.value.code == ErrorCode.REFUND_ERROR
    assert (await store.users.get(user.id)).has_course(course.id)
    transaction = await store.transactions.get_by_payment_id("pay_1")
    assert transaction.refund_status is None
    events = [e.event_type for e in await store.audit.get_by_entity_id("pay_1")]
    assert events[-1] == AuditEventType.REFUND_FAILED


async def test_uncaptured_payment_is_not_refunded(refunds, store, gateway, user, admin, course, purchase):
    gateway.payments["pay_1"] = gateway.payments["pay_1"].model_copy(update={"status": "authorized"})

    with pytest.raises(DomainError) as exc:
        await refunds.request_refund("pay_1", admin, "t1")

    assert exc.value.code == ErrorCode.REFUND_ERROR
    assert not gateway.called("refund")
    assert (await store.users.get(user.id)).has_course(course.id)


async def test_failed_gateway_refund_status(refunds, store, gateway, user, admin, course, purchase):
    gateway.refund_status = "failed"
    with pytest.raises(DomainError) as exc:
        await refunds.request_refund("pay_1", admin, "t1")
    assert exc.value.code == ErrorCode.REFUND_ERROR
    assert (await store.users.get(user.id)).has_course(course.id)


@pytest.mark.parametrize("status, expected", [
    ("created", RefundStatus.PROCESSED),
    ("processed", RefundStatus.PROCESSED),
    ("failed", RefundStatus.FAILED),
    ("something-new", RefundStatus.PROCESSED),
    (None, RefundStatus.PROCESSED),
])
def test_gateway_refund_status_mapping(status, expected):
    assert map_refund_status(status) == expected


# =============================================================================
# WEBHOOKS
# =============================================================================

async def test_webhook_moves_refund_forward(refunds, store, purchase, email_sender):
    body = webhook_body("refund.processed")
    result = await refunds.handle_webhook(body, sign_body(body), "t1")
    assert result == {"status": "updated", "refundStatus": "processed"}

    body = webhook_body("refund.completed")
    result = await refunds.handle_webhook(body, sign_body(body), "t2")
    assert result["refundStatus"] == "refunded"

    transaction = await store.transactions.get_by_payment_id("pay_1")
    assert transaction.refund_status == RefundStatus.REFUNDED
    assert transaction.status == TransactionStatus.REFUNDED
    assert transaction.refund_id == "rfnd_9"
    assert email_sender.sent[-1]["template_id"] == "d-refund-completed"


async def test_webhook_never_moves_backwards(refunds, store, purchase):
    await store.transactions.update_refund(
        purchase.with_refund(RefundStatus.REFUNDED, "rfnd_9", TransactionStatus.REFUNDED)
    )
    before = await store.audit.get_by_entity_id("pay_1")

    body = webhook_body("refund.processed")
    result = await refunds.handle_webhook(body, sign_body(body), "t1")

    assert result["status"] == "unchanged"
    assert (await store.transactions.get_by_payment_id("pay_1")).refund_status == RefundStatus.REFUNDED
    assert len(await store.audit.get_by_entity_id("pay_1")) == len(before)


async def test_repeated_webhook_is_unchanged(refunds, purchase):
    body = webhook_body("refund.failed")
    assert (await refunds.handle_webhook(body, sign_body(body), "t1"))["status"] == "updated"
    assert (await refunds.handle_webhook(body, sign_body(body), "t2"))["status"] == "unchanged"


async def test_unknown_event_is_ignored(refunds, purchase):
    body = webhook_body("payment.captured")
    result = await refunds.handle_webhook(body, sign_body(body), "t1")
    assert result == {"status": "ignored", "event": "payment.captured"}


async def test_webhook_signature_is_checked(refunds, purchase):
    with pytest.raises(DomainError) as exc:
        await refunds.handle_webhook(webhook_body("refund.processed"), "bad", "t1")
    assert exc.value.code == ErrorCode.INVALID_SIGNATURE


@pytest.mark.parametrize("body, code", [
    (b"not json", ErrorCode.INVALID_PAYLOAD),
    (json.dumps({"event": "refund.processed"}).encode(), ErrorCode.INVALID_PAYLOAD),
    (json.dumps({"event": "refund.processed", "payload": {"refund": {"entity": {}}}}).encode(), ErrorCode.INVALID_DATA),
    (json.dumps({"event": "refund.processed", "payload": {"refund": "oops"}}).encode(), ErrorCode.INVALID_DATA),
    (json.dumps({"event": "refund.failed", "payload": {"refund": {"entity": ["rfnd_9"]}}}).encode(), ErrorCode.INVALID_DATA),
    (json.dumps({"event": "refund.completed", "payload": {"refund": {"entity": {"id": 9, "payment_id": ["pay_1"]}}}}).encode(), ErrorCode.INVALID_DATA),
    (webhook_body("refund.processed", payment_id="pay_unknown"), ErrorCode.TRANSACTION_NOT_FOUND),
])
async def test_webhook_rejections(refunds, purchase, body, code):
    with pytest.raises(DomainError) as exc:
        await refunds.handle_webhook(body, sign_body(body), "t1")
    assert exc.value.code == code
