from datetime import timedelta

import pytest

from conftest import signed
from core.security import create_access_token
from schemas.domain import User


async def buy_course(client, headers, course):
    created = await client.post(
        "/api/payment/create-order",
        json={"amount": 49900, "currency": "INR", "purchaseType": "course", "courseId": course.id},
        headers=headers,
    )
    order_id = created.json()["order_id"]
    return await client.post(
        "/api/payment/verify-payment",
        json={
            "razorpay_payment_id": "pay_api_1",
            "razorpay_order_id": order_id,
            "razorpay_signature": signed(order_id, "pay_api_1"),
            "purchaseType": "course",
            "courseId": course.id,
            "amount": 49900,
            "currency": "INR",
        },
        headers=headers,
    )


# =============================================================================
# PROCESS SURFACE
# =============================================================================

async def test_health_and_probes(client):
    health = await client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "healthy"
    assert (await client.get("/ready")).json() == {"ready": True}
    assert (await client.get("/live")).json() == {"live": True}


async def test_trace_id_is_echoed(client):
    response = await client.get("/live", headers={"X-Trace-Id": "trace-from-client"})
    assert response.headers["X-Trace-Id"] == "trace-from-client"
    assert "X-Response-Time-Ms" in response.headers
    assert response.headers["X-Content-Type-Options"] == "nosniff"


async def test_unknown_route_uses_error_body(client):
    response = await client.get("/api/nope")
    body = response.json()
    assert response.status_code == 404
    assert body["success"] is False
    assert body["code"] == "NOT_FOUND"
    assert body["traceId"] == response.headers["X-Trace-Id"]


# =============================================================================
# AUTH
# =============================================================================

async def test_missing_token(client):
    response = await client.get("/api/saved-courses")
    assert response.status_code == 401
    assert response.json()["code"] == "MISSING_TOKEN"


async def test_expired_token(client, auth_config, user):
    token = create_access_token(auth_config, user.id, expires_in=timedelta(seconds=-5))
    response = await client.get("/api/saved-courses", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert response.json()["code"] == "TOKEN_EXPIRED"


async def test_token_for_deleted_user(client, auth_config):
    token = create_access_token(auth_config, "ghost-user")
    response = await client.get("/api/saved-courses", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert response.json()["code"] == "USER_NOT_FOUND"


async def test_banned_user(client, store, auth_headers):
    banned = await store.users.create(User(email="banned@example.com", is_banned=True))
    response = await client.get("/api/saved-courses", headers=auth_headers(banned))
    assert response.status_code == 403
    assert response.json()["code"] == "USER_BANNED"


async def test_admin_routes_reject_users(client, auth_headers, user):
    response = await client.get("/api/transactions/all", headers=auth_headers(user))
    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"


# =============================================================================
# PAYMENTS
# =============================================================================

async def test_purchase_flow_over_http(client, auth_headers, user, course, store):
    headers = auth_headers(user)
    response = await buy_course(client, headers, course)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["emailStatus"] == "sent"
    assert body["data"]["alreadyProcessed"] is False
    assert (await store.users.get(user.id)).has_course(course.id)

    purchased = await client.get("/api/users/purchased-courses", headers=headers)
    assert [c["courseId"] for c in purchased.json()["data"]] == [course.id]

    history = await client.get("/api/transactions/user", headers=headers)
    assert history.json()["pagination"] == {"page": 1, "limit": 10, "total": 1, "pages": 1}


async def test_create_order_returns_order_fields_at_top_level(client, auth_headers, user, course):
    response = await client.post(
        "/api/payment/create-order",
        json={"amount": 49900, "currency": "INR", "purchaseType": "course", "courseId": course.id},
        headers=auth_headers(user),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["order_id"].startswith("order_")
    assert body["amount"] == 49900
    assert body["currency"] == "INR"
    assert "data" not in body


async def test_create_order_validation_error_body(client, auth_headers, user):
    response = await client.post(
        "/api/payment/create-order",
        json={"amount": 49900, "currency": "EUR", "purchaseType": "course", "courseId": "c"},
        headers=auth_headers(user),
    )
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "INVALID_CURRENCY"
    assert set(body) >= {"success", "code", "message", "traceId"}


async def test_bad_signature_over_http(client, auth_headers, user, course, store):
    headers = auth_headers(user)
    created = await client.post(
        "/api/payment/create-order",
        json={"amount": 49900, "currency": "INR", "purchaseType": "course", "courseId": course.id},
        headers=headers,
    )
    order_id = created.json()["order_id"]
    response = await client.post(
        "/api/payment/verify-payment",
        json={
            "razorpay_payment_id": "pay_x",
            "razorpay_order_id": order_id,
            "razorpay_signature": "forged",
            "purchaseType": "course",
            "courseId": course.id,
            "amount": 49900,
            "currency": "INR",
        },
        headers=headers,
    )
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_SIGNATURE"
    assert await store.transactions.get_by_payment_id("pay_x") is None


async def test_upstream_errors_hide_details_outside_development(client, container, auth_headers, user, gateway):
    from core.errors import GatewayError

    debug = container.server.DEBUG
    container.server.DEBUG = False
    gateway.fail_with = GatewayError("create_order", "bad key rzp_test_key")
    try:
        response = await client.post(
            "/api/payment/create-order",
            json={"amount": 49900, "currency": "INR", "purchaseType": "course", "courseId": "c"},
            headers=auth_headers(user),
        )
    finally:
        container.server.DEBUG = debug
    assert response.status_code == 502
    assert response.json()["message"] == "Failed to create payment order"


# =============================================================================
# ADMIN TRANSACTIONS
# =============================================================================

async def test_refund_and_details_over_http(client, auth_headers, user, admin, course, gateway, store):
    await buy_course(client, auth_headers(user), course)
    order = next(iter(gateway.orders.values()))
    gateway.capture("pay_api_1", order)

    refund = await client.post(
        "/api/transactions/refund/request",
        json={"paymentId": "pay_api_1"},
        headers=auth_headers(admin),
    )
    assert refund.status_code == 200
    assert refund.json()["data"]["refundStatus"] == "processed"

    details = await client.get("/api/transactions/details/pay_api_1", headers=auth_headers(admin))
    data = details.json()["data"]
    assert data["refundStatus"] == "processed"
    assert data["course"]["courseId"] == course.id
    assert data["user"]["email"] == user.email
    assert data["amount"] == 499.0

    again = await client.post(
        "/api/transactions/refund/request",
        json={"paymentId": "pay_api_1"},
        headers=auth_headers(admin),
    )
    assert again.status_code == 409
    assert again.json()["code"] == "REFUND_ALREADY_PROCESSED"

    trail = await client.get("/api/transactions/audit/pay_api_1", headers=auth_headers(admin))
    assert [e["eventType"] for e in trail.json()["data"]][:2] == ["transaction.created", "access.granted"]


async def test_webhook_route_reads_raw_body(client, auth_headers, user, course, store):
    import hashlib
    import hmac
    import json

    from conftest import WEBHOOK_SECRET

    await buy_course(client, auth_headers(user), course)
    body = json.dumps({
        "event": "refund.failed",
        "payload": {"refund": {"entity": {"id": "rfnd_1", "payment_id": "pay_api_1"}}},
    }).encode()
    signature = hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()

    response = await client.post(
        "/api/transactions/razorpay-refund-webhook",
        content=body,
        headers={"X-Razorpay-Signature": signature, "Content-Type": "application/json"},
    )
    assert response.status_code == 200
    assert response.json()["refundStatus"] == "failed"

    ignored = await client.post(
        "/api/transactions/razorpay-refund-webhook",
        content=json.dumps({"event": "order.paid", "payload": {}}).encode(),
        headers={"X-Razorpay-Signature": hmac.new(
            WEBHOOK_SECRET.encode(),
            json.dumps({"event": "order.paid", "payload": {}}).encode(),
            hashlib.sha256,
        ).hexdigest()},
    )
    assert ignored.status_code == 200
    assert ignored.json()["status"] == "ignored"


async def test_revoke_route(client, auth_headers, user, admin, course, store):
    await buy_course(client, auth_headers(user), course)
    response = await client.post(
        "/api/transactions/revoke", json={"paymentId": "pay_api_1"}, headers=auth_headers(admin)
    )
    assert response.status_code == 200
    assert not (await store.users.get(user.id)).has_course(course.id)


@pytest.mark.parametrize("query", ["page=0", "limit=101", "limit=abc"])
async def test_invalid_pagination(client, auth_headers, admin, query):
    response = await client.get(f"/api/transactions/all?{query}", headers=auth_headers(admin))
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_PAGINATION"


async def test_report_endpoints(client, auth_headers, user, admin, course):
    await buy_course(client, auth_headers(user), course)
    headers = auth_headers(admin)

    total = (await client.get("/api/transactions/total", headers=headers)).json()["data"]
    assert total["total"] == 1 and len(total["history"]) == 12

    recent = (await client.get("/api/transactions/recent", headers=headers)).json()["data"]
    assert recent["total"] == 1 and len(recent["daily"]) >= 28

    assert (await client.get("/api/transactions/total?year=1999", headers=headers)).json()["code"] == "INVALID_INPUT"
    assert (await client.get("/api/transactions/recent?month=13", headers=headers)).json()["code"] == "INVALID_INPUT"

    found = await client.get("/api/transactions/search?query=ASHA@", headers=headers)
    assert [t["paymentId"] for t in found.json()["data"]] == ["pay_api_1"]

    short = await client.get("/api/transactions/search?query=ab", headers=headers)
    assert short.json()["code"] == "INVALID_INPUT"

    missing = await client.get("/api/transactions/search?query=nobody", headers=headers)
    assert missing.status_code == 404

    filtered = await client.get("/api/transactions/filter?status=successful", headers=headers)
    assert len(filtered.json()["data"]) == 1
    bad = await client.get("/api/transactions/filter?status=weird", headers=headers)
    assert bad.json()["code"] == "INVALID_INPUT"


# =============================================================================
# LEARNING & CATALOG
# =============================================================================

async def test_saved_course_toggle(client, auth_headers, user, course):
    headers = auth_headers(user)

    saved = await client.post("/api/saved-courses/toggle", json={"courseId": course.id}, headers=headers)
    assert saved.status_code == 201
    listed = await client.get("/api/saved-courses", headers=headers)
    assert [c["id"] for c in listed.json()["data"]] == [course.id]

    removed = await client.post("/api/saved-courses/toggle", json={"courseId": course.id}, headers=headers)
    assert removed.status_code == 200
    assert removed.json()["data"]["saved"] is False

    missing = await client.delete(f"/api/saved-courses/{course.id}", headers=headers)
    assert missing.json()["code"] == "SAVED_COURSE_NOT_FOUND"


async def test_progress_tracking(client, auth_headers, user, other_user, course):
    headers = auth_headers(user)

    recorded = await client.post(
        "/api/progress", json={"courseId": course.id, "lessonId": "lesson-1"}, headers=headers
    )
    assert recorded.json()["data"]["progressPercentage"] == 33.33

    unknown = await client.post(
        "/api/progress", json={"courseId": course.id, "lessonId": "lesson-99"}, headers=headers
    )
    assert unknown.status_code == 404
    assert unknown.json()["code"] == "LESSON_NOT_FOUND"

    progress = await client.get(f"/api/progress/{course.id}", headers=headers)
    assert progress.json()["data"]["completedLessons"] == ["lesson-1"]

    in_progress = await client.get(f"/api/progress/in-progress/{user.id}", headers=headers)
    assert [c["courseId"] for c in in_progress.json()["data"]] == [course.id]

    await client.post("/api/progress/mark-completed", json={"courseId": course.id}, headers=headers)
    completed = await client.get(f"/api/progress/completed/{user.id}", headers=headers)
    assert [c["courseId"] for c in completed.json()["data"]] == [course.id]

    foreign = await client.get(f"/api/progress/completed/{user.id}", headers=auth_headers(other_user))
    assert foreign.status_code == 403


async def test_catalog_routes(client, auth_headers, admin, user):
    course = {
        "title": "Intro to ML",
        "description": "Models and data",
        "category": "Machine Learning",
        "oldPrice": 1999,
        "newPrice": 999,
    }
    forbidden = await client.post("/api/courses", json=course, headers=auth_headers(user))
    assert forbidden.status_code == 403

    created = await client.post("/api/courses", json=course, headers=auth_headers(admin))
    assert created.status_code == 201
    course_id = created.json()["data"]["id"]

    fetched = await client.get(f"/api/courses/{course_id}")
    assert fetched.json()["data"]["duration"] == 365

    bad_prices = await client.post(
        "/api/courses", json={**course, "oldPrice": 100}, headers=auth_headers(admin)
    )
    assert bad_prices.status_code == 400
    assert bad_prices.json()["code"] == "VALIDATION_ERROR"

    plan = {"name": "Premium", "type": "Personal", "oldPrice": 4999, "newPrice": 2999,
            "duration": 365, "features": ["Everything"]}
    assert (await client.post("/api/subscriptions", json=plan, headers=auth_headers(admin))).status_code == 201
    duplicate = await client.post("/api/subscriptions", json=plan, headers=auth_headers(admin))
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "DUPLICATE_SUBSCRIPTION"

    plans = await client.get("/api/subscriptions")
    assert [p["name"] for p in plans.json()["data"]] == ["Premium"]
