from __future__ import annotations

import uuid

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api import billing as billing_api
from app.api.deps import get_billing_events, get_db
from app.errors import register_error_handlers
from app.models.billing import PaymentStatus
from app.models.catalog import CheckoutSession
from app.models.entitlement import EntitlementKey, UserEntitlement
from app.models.webhook import WebhookLog, WebhookLogStatus
from tests.mocks import iso


@pytest.fixture()
def billing_test_app(db_session, events):
    app = FastAPI()
    register_error_handlers(app)
    app.include_router(billing_api.router)
    app.include_router(billing_api.admin_router)
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_billing_events] = lambda: events
    yield app
    app.dependency_overrides.clear()


@pytest.fixture()
def client(billing_test_app):
    return TestClient(billing_test_app, raise_server_exceptions=False)


def _admin_headers(admin_actor):
    return {
        "X-Actor-Id": str(admin_actor.id),
        "X-Actor-Email": admin_actor.email,
        "X-Actor-Roles": "support, admin",
    }


def _webhook_body(checkout, external_id="evt-api-1", status="PAID"):
    return {
        "provider": "zarinpal",
        "externalId": external_id,
        "providerRef": "A00000000000000000099",
        "status": status,
        "amount": 1_000_000,
        "currency": "IRR",
        "userId": str(checkout.user_id),
        "checkoutSessionId": str(checkout.id),
        "rawPayload": {"authority": "A00000000000000000099", "code": 100},
    }


@pytest.fixture()
def checkout(db_session, user_id, monthly_price):
    session = CheckoutSession(user_id=user_id, price_id=monthly_price.id, provider="zarinpal")
    db_session.add(session)
    db_session.commit()
    return session


def test_webhook_endpoint_ingests_and_dedupes(client, checkout):
    first = client.post("/billing/webhooks/events", json=_webhook_body(checkout))
    second = client.post("/billing/webhooks/events", json=_webhook_body(checkout))

    assert first.status_code == 200
    body = first.json()
    assert body["idempotent"] is False
    assert body["paymentStatus"] == "paid"
    assert body["invoiceNumber"].startswith("INV-")
    assert second.status_code == 200
    assert second.json()["idempotent"] is True
    assert second.json()["paymentId"] == body["paymentId"]


def test_webhook_endpoint_rejects_malformed_body(client, checkout):
    body = _webhook_body(checkout)
    body["status"] = "SETTLED"

    response = client.post("/billing/webhooks/events", json=body)

    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"


def test_invalid_webhook_endpoint_records_log(client, db_session):
    response = client.post(
        "/billing/webhooks/invalid",
        json={
            "provider": "zarinpal",
            "externalId": "evt-bad-sig",
            "rawPayload": {"status": "paid"},
            "error": "signature mismatch",
        },
    )

    assert response.status_code == 202
    assert response.json()["status"] == "invalid"
    log = db_session.get(WebhookLog, uuid.UUID(response.json()["webhook_log_id"]))
    assert log.status == WebhookLogStatus.invalid


def test_admin_refund_endpoint_uses_path_id(client, admin_actor, make_payment, monthly_price):
    payment = make_payment(monthly_price)

    response = client.post(
        f"/admin/billing/payments/{payment.id}/refund",
        headers=_admin_headers(admin_actor),
        json={
            "reason": "Duplicate charge",
            "updatedAt": iso(payment.updated_at),
            "policy": "keep_until_end",
            "amount": 250_000,
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["data"]["remaining_refundable"] == 750_000


def test_admin_endpoint_without_actor_returns_failure_result(client, make_payment, monthly_price):
    payment = make_payment(monthly_price, status=PaymentStatus.pending)

    response = client.post(
        f"/admin/billing/payments/{payment.id}/mark-failed",
        json={"reason": "Bank reported a chargeback", "updatedAt": iso(payment.updated_at)},
    )

    assert response.status_code == 200
    assert response.json() == {
        "ok": False,
        "error": "Authentication required",
        "idempotent": False,
        "data": None,
    }


def test_admin_endpoint_rejects_malformed_actor_header(client, make_payment, monthly_price):
    payment = make_payment(monthly_price)

    response = client.post(
        f"/admin/billing/payments/{payment.id}/refund",
        headers={"X-Actor-Id": "not-a-uuid", "X-Actor-Roles": "admin"},
        json={},
    )

    assert response.status_code == 401
    assert response.json()["message"] == "Invalid actor id"


def test_admin_cancel_now_with_unknown_id(client, admin_actor):
    response = client.post(
        f"/admin/billing/subscriptions/{uuid.uuid4()}/cancel-now",
        headers=_admin_headers(admin_actor),
        json={"reason": "Requested through support", "updatedAt": "2025-01-01T00:00:00+00:00"},
    )

    assert response.status_code == 200
    assert response.json()["ok"] is False
    assert response.json()["error"] == "Subscription not found"


def test_job_credit_endpoints(client, db_session, user_id):
    db_session.add(
        UserEntitlement(user_id=user_id, key=EntitlementKey.job_post_credit, remaining_credits=1)
    )
    db_session.commit()

    summary = client.get(f"/billing/users/{user_id}/entitlements")
    first = client.post(f"/billing/users/{user_id}/job-credits/consume")
    second = client.post(f"/billing/users/{user_id}/job-credits/consume")

    assert summary.status_code == 200
    assert summary.json()["job_credits"] == 1
    assert summary.json()["can_publish"] is False
    assert first.status_code == 200
    assert first.json()["remaining_credits"] == 0
    assert second.status_code == 409
    assert second.json()["message"] == "No job post credits remaining"
