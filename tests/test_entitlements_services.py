from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from sqlalchemy import update

from app.models.audit import AuditLog
from app.models.billing import Invoice, InvoiceStatus, InvoiceType, PaymentStatus
from app.models.catalog import Price
from app.models.entitlement import JobCreditGrant, UserEntitlement
from app.models.subscription import SubscriptionStatus
from app.services import entitlements as entitlement_service
from app.services import subscriptions as subscription_service
from app.services.common import add_months, as_utc
from app.services.entitlements import (
    EntitlementOutcome,
    JobCreditIntent,
    SubscriptionIntent,
    UnsupportedIntent,
)

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def test_add_months_clamps_to_month_end():
    jan_31 = datetime(2025, 1, 31, 8, 0, tzinfo=timezone.utc)
    assert add_months(jan_31, 1) == datetime(2025, 2, 28, 8, 0, tzinfo=timezone.utc)
    assert add_months(jan_31, 3) == datetime(2025, 4, 30, 8, 0, tzinfo=timezone.utc)
    assert add_months(jan_31, 12) == datetime(2026, 1, 31, 8, 0, tzinfo=timezone.utc)


def test_resolve_price_intent_per_product_type(monthly_price, job_price, course_price):
    assert isinstance(entitlement_service.resolve_price_intent(monthly_price), SubscriptionIntent)
    job_intent = entitlement_service.resolve_price_intent(job_price)
    assert isinstance(job_intent, JobCreditIntent)
    assert job_intent.credits == 5
    assert isinstance(entitlement_service.resolve_price_intent(course_price), UnsupportedIntent)


def test_subscription_price_without_plan_is_unsupported(db_session, subscription_product):
    price = Price(product_id=subscription_product.id, amount=10, currency="IRR")
    db_session.add(price)
    db_session.commit()
    intent = entitlement_service.resolve_price_intent(price)
    assert isinstance(intent, UnsupportedIntent)


def test_job_credits_fall_back_to_session_payload_then_one(db_session, job_price):
    product = job_price.product
    product.metadata_ = None
    db_session.commit()
    assert entitlement_service.resolve_job_credits(job_price, product) == 1

    class _Session:
        provider_payload = {"credits": "3"}

    assert entitlement_service.resolve_job_credits(job_price, product, _Session()) == 3


def test_subscription_payment_grants_publish_access(
    db_session, events, gateway, make_payment, monthly_price, user_id
):
    payment = make_payment(monthly_price)

    result = entitlement_service.apply_payment(db_session, events, payment.id, now=NOW)

    assert result.outcome == EntitlementOutcome.applied
    assert result.expires_at == add_months(NOW, 1)
    entitlement = entitlement_service.get_entitlement(
        db_session, user_id, entitlement_service.PUBLISH_ENTITLEMENT
    )
    assert as_utc(entitlement.expires_at) == add_months(NOW, 1)
    subscription = subscription_service.get_for_user(db_session, user_id)
    assert subscription.status == SubscriptionStatus.active
    assert as_utc(subscription.ends_at) == add_months(NOW, 1)
    assert "subscription.activated" in gateway.event_types()
    audit = (
        db_session.query(AuditLog)
        .filter(AuditLog.idempotency_key == f"subscription:{payment.id}")
        .one()
    )
    assert audit.action == "SUBSCRIPTION_GRANTED"


def test_replaying_subscription_payment_keeps_expiry(
    db_session, events, make_payment, monthly_price, user_id
):
    payment = make_payment(monthly_price)
    first = entitlement_service.apply_payment(db_session, events, payment.id, now=NOW)

    second = entitlement_service.apply_payment(
        db_session, events, payment.id, now=NOW + timedelta(days=3)
    )

    assert second.outcome == EntitlementOutcome.already_applied
    assert second.ok
    assert second.expires_at == first.expires_at
    entitlement = entitlement_service.get_entitlement(
        db_session, user_id, entitlement_service.PUBLISH_ENTITLEMENT
    )
    assert as_utc(entitlement.expires_at) == first.expires_at
    guard_rows = (
        db_session.query(AuditLog)
        .filter(AuditLog.action == "SUBSCRIPTION_DUPLICATE_GUARD")
        .count()
    )
    assert guard_rows == 1


def test_second_payment_extends_from_existing_expiry(
    db_session, events, make_payment, monthly_price, user_id
):
    first_payment = make_payment(monthly_price)
    first = entitlement_service.apply_payment(db_session, events, first_payment.id, now=NOW)

    second_payment = make_payment(monthly_price)
    second = entitlement_service.apply_payment(
        db_session, events, second_payment.id, now=NOW + timedelta(days=1)
    )

    assert second.outcome == EntitlementOutcome.applied
    assert second.expires_at == add_months(first.expires_at, 1)
    subscription = subscription_service.get_for_user(db_session, user_id)
    assert as_utc(subscription.ends_at) == add_months(first.expires_at, 1)


def test_subscription_payment_fills_invoice_coverage(
    db_session, events, make_payment, monthly_price, monthly_plan
):
    payment = make_payment(monthly_price)
    invoice = Invoice(
        user_id=payment.user_id,
        payment_id=payment.id,
        type=InvoiceType.sale,
        status=InvoiceStatus.paid,
        total=payment.amount,
        currency=payment.currency,
    )
    db_session.add(invoice)
    db_session.commit()

    entitlement_service.apply_payment(
        db_session, events, payment.id, invoice_id=invoice.id, now=NOW
    )

    db_session.refresh(invoice)
    assert invoice.plan_id == monthly_plan.id
    assert invoice.plan_cycle == "monthly"
    assert invoice.unit_amount == monthly_price.amount
    assert as_utc(invoice.period_start) == NOW
    assert as_utc(invoice.period_end) == add_months(NOW, 1)


def test_job_credit_payment_grants_credits_once(
    db_session, events, make_payment, job_price, user_id
):
    payment = make_payment(job_price)

    first = entitlement_service.apply_payment(db_session, events, payment.id)
    second = entitlement_service.apply_payment(db_session, events, payment.id)

    assert first.outcome == EntitlementOutcome.applied
    assert first.credits_granted == 5
    assert first.remaining_credits == 5
    assert second.outcome == EntitlementOutcome.already_applied
    assert second.remaining_credits == 5
    assert db_session.query(JobCreditGrant).filter(JobCreditGrant.payment_id == payment.id).count() == 1
    balance = entitlement_service.get_entitlement(
        db_session, user_id, entitlement_service.JOB_CREDIT_ENTITLEMENT
    )
    assert balance.remaining_credits == 5


def test_job_credits_accumulate_across_payments(
    db_session, events, make_payment, job_price, user_id
):
    for _ in range(2):
        payment = make_payment(job_price)
        entitlement_service.apply_payment(db_session, events, payment.id)
    balance = entitlement_service.get_entitlement(
        db_session, user_id, entitlement_service.JOB_CREDIT_ENTITLEMENT
    )
    assert balance.remaining_credits == 10


def test_course_payment_is_unsupported_not_an_error(
    db_session, events, make_payment, course_price
):
    payment = make_payment(course_price)
    result = entitlement_service.apply_payment(db_session, events, payment.id)
    assert result.outcome == EntitlementOutcome.unsupported
    assert result.ok


def test_unpaid_payment_is_rejected(db_session, events, make_payment, monthly_price):
    payment = make_payment(monthly_price, status=PaymentStatus.pending)
    result = entitlement_service.apply_payment(db_session, events, payment.id)
    assert result.outcome == EntitlementOutcome.payment_not_paid
    assert not result.ok


def test_inactive_price_is_rejected(db_session, events, make_payment, monthly_price):
    payment = make_payment(monthly_price)
    monthly_price.active = False
    db_session.commit()
    result = entitlement_service.apply_payment(db_session, events, payment.id)
    assert result.outcome == EntitlementOutcome.price_not_available


def test_unknown_payment(db_session, events):
    import uuid

    result = entitlement_service.apply_payment(db_session, events, uuid.uuid4())
    assert result.outcome == EntitlementOutcome.payment_not_found


def test_revoke_publish_access_only_pulls_expiry_back(db_session, user_id):
    future = NOW + timedelta(days=20)
    entitlement_service.set_publish_expiry(db_session, user_id, future)
    db_session.commit()

    entitlement_service.revoke_publish_access(db_session, user_id, NOW)
    db_session.commit()
    entitlement = entitlement_service.get_entitlement(
        db_session, user_id, entitlement_service.PUBLISH_ENTITLEMENT
    )
    assert as_utc(entitlement.expires_at) == NOW

    entitlement_service.revoke_publish_access(db_session, user_id, NOW + timedelta(days=1))
    db_session.commit()
    db_session.refresh(entitlement)
    assert as_utc(entitlement.expires_at) == NOW


def _credit_balance(db_session, user_id, credits, expires_at=None):
    balance = UserEntitlement(
        user_id=user_id,
        key=entitlement_service.JOB_CREDIT_ENTITLEMENT,
        remaining_credits=credits,
        expires_at=expires_at,
    )
    db_session.add(balance)
    db_session.commit()
    return balance


def test_purchased_job_credit_can_be_spent(db_session, events, make_payment, job_price, user_id):
    payment = make_payment(job_price)
    entitlement_service.apply_payment(db_session, events, payment.id)

    remaining = entitlement_service.spend_job_credit(db_session, user_id)

    assert remaining == 4
    assert entitlement_service.job_credit_balance(db_session, user_id) == 4


def test_consuming_the_last_credit_empties_the_balance(db_session, user_id):
    _credit_balance(db_session, user_id, 1)

    assert entitlement_service.consume_job_credit(db_session, user_id, now=NOW) == 0
    db_session.commit()

    assert entitlement_service.has_job_credit(db_session, user_id, now=NOW) is False
    with pytest.raises(HTTPException) as exc:
        entitlement_service.consume_job_credit(db_session, user_id, now=NOW)
    assert exc.value.status_code == 409
    assert exc.value.detail == "No job post credits remaining"


def test_consuming_without_any_purchase_is_refused(db_session, user_id):
    with pytest.raises(HTTPException) as exc:
        entitlement_service.spend_job_credit(db_session, user_id)
    assert exc.value.status_code == 409
    assert exc.value.detail == "No job post credits purchased"


def test_expired_credits_are_not_usable(db_session, user_id):
    _credit_balance(db_session, user_id, 3, expires_at=NOW - timedelta(days=1))

    assert entitlement_service.job_credit_balance(db_session, user_id, now=NOW) == 0
    with pytest.raises(HTTPException) as exc:
        entitlement_service.consume_job_credit(db_session, user_id, now=NOW)
    assert exc.value.detail == "Job post credits have expired"


def test_credit_taken_by_another_consumer_is_refused(db_session, user_id, monkeypatch):
    balance = _credit_balance(db_session, user_id, 1)
    real_check = entitlement_service.assert_has_job_credit

    def _check_then_lose_race(db, owner, now=None):
        entitlement = real_check(db, owner, now)
        db.execute(
            update(UserEntitlement)
            .where(UserEntitlement.id == balance.id)
            .values(remaining_credits=0)
            .execution_options(synchronize_session=False)
        )
        return entitlement

    monkeypatch.setattr(entitlement_service, "assert_has_job_credit", _check_then_lose_race)

    with pytest.raises(HTTPException) as exc:
        entitlement_service.consume_job_credit(db_session, user_id, now=NOW)
    assert exc.value.status_code == 409
    assert "another request" in exc.value.detail
    db_session.refresh(balance)
    assert balance.remaining_credits == 0


def test_publish_access_follows_expiry(db_session, user_id):
    assert entitlement_service.has_publish_access(db_session, user_id, now=NOW) is False

    entitlement_service.set_publish_expiry(db_session, user_id, NOW + timedelta(days=3))
    db_session.commit()
    assert entitlement_service.has_publish_access(db_session, user_id, now=NOW) is True
    assert (
        entitlement_service.has_publish_access(db_session, user_id, now=NOW + timedelta(days=4))
        is False
    )

    summary = entitlement_service.entitlement_summary(db_session, user_id, now=NOW)
    assert summary["can_publish"] is True
    assert summary["publish_expires_at"] == (NOW + timedelta(days=3)).isoformat()
    assert summary["job_credits"] == 0
