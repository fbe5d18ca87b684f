"""Two operators acting on the same record from separate connections."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from app.models.billing import Invoice, InvoiceType, Payment, PaymentStatus
from app.models.catalog import Plan, PlanCycle, Product, ProductType
from app.models.subscription import Subscription, SubscriptionStatus
from app.schemas.admin_billing import AdminActor
from app.services.billing import admin_payments, admin_subscriptions, payment_actions, subscription_actions
from app.services.billing._common import STALE_DATA_ERROR
from app.services.common import as_utc
from tests.mocks import iso


@pytest.fixture()
def second_actor():
    return AdminActor(id=uuid.uuid4(), email="finance@example.com", roles=["admin"])


def _interleave(monkeypatch, module, concurrent_action):
    """Run ``concurrent_action`` once, right after the first freshness check passes its load."""
    real_assert_fresh = module.assert_fresh
    started = []
    results = []

    def _assert_fresh(current, expected):
        if not started:
            started.append(True)
            results.append(concurrent_action())
        real_assert_fresh(current, expected)

    monkeypatch.setattr(module, "assert_fresh", _assert_fresh)
    return results


def _seed_payment(factory, user_id):
    seed = factory()
    payment = Payment(
        user_id=user_id,
        provider="zarinpal",
        provider_ref=f"ref-{uuid.uuid4().hex[:12]}",
        status=PaymentStatus.paid,
        amount=1_000_000,
        refunded_amount=0,
        currency="IRR",
    )
    seed.add(payment)
    seed.commit()
    snapshot = (payment.id, iso(payment.updated_at))
    seed.close()
    return snapshot


def _seed_subscription(factory, user_id):
    seed = factory()
    product = Product(name="Pro profile", type=ProductType.subscription)
    seed.add(product)
    seed.flush()
    plan = Plan(product_id=product.id, code="pro-monthly", name="Pro monthly", cycle=PlanCycle.monthly)
    seed.add(plan)
    seed.flush()
    now = datetime.now(timezone.utc)
    subscription = Subscription(
        user_id=user_id,
        plan_id=plan.id,
        status=SubscriptionStatus.active,
        started_at=now - timedelta(days=10),
        ends_at=now + timedelta(days=20),
        renewal_at=now + timedelta(days=20),
    )
    seed.add(subscription)
    seed.commit()
    snapshot = (subscription.id, iso(subscription.updated_at))
    seed.close()
    return snapshot


def test_refund_racing_another_refund_is_refused(
    file_sessionmaker, events, user_id, admin_actor, second_actor, monkeypatch
):
    payment_id, updated_at = _seed_payment(file_sessionmaker, user_id)
    first_db = file_sessionmaker()
    second_db = file_sessionmaker()

    def _refund(db, actor):
        return payment_actions.refund(
            db,
            events,
            actor,
            {
                "id": str(payment_id),
                "reason": "Customer requested a refund",
                "updatedAt": updated_at,
                "policy": "keep_until_end",
                "amount": 600_000,
            },
        )

    concurrent = _interleave(
        monkeypatch, admin_payments, lambda: _refund(second_db, second_actor)
    )
    result = _refund(first_db, admin_actor)

    assert concurrent[0].ok is True
    assert concurrent[0].data["remaining_refundable"] == 400_000
    assert result.ok is False
    assert result.error == STALE_DATA_ERROR

    check = file_sessionmaker()
    payment = check.get(Payment, payment_id)
    refunds = check.query(Invoice).filter(Invoice.type == InvoiceType.refund).all()
    assert payment.refunded_amount == 600_000
    assert payment.status == PaymentStatus.refunded_partial
    assert [refund.total for refund in refunds] == [-600_000]
    for session in (first_db, second_db, check):
        session.close()


def test_cancel_now_racing_an_end_date_change_is_refused(
    file_sessionmaker, events, user_id, admin_actor, second_actor, monkeypatch
):
    subscription_id, updated_at = _seed_subscription(file_sessionmaker, user_id)
    extended_to = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=60)
    first_db = file_sessionmaker()
    second_db = file_sessionmaker()

    def _extend():
        return subscription_actions.adjust_ends_at(
            second_db,
            events,
            second_actor,
            {
                "id": str(subscription_id),
                "reason": "Goodwill extension after outage",
                "updatedAt": updated_at,
                "newEndsAt": extended_to.isoformat(),
            },
        )

    concurrent = _interleave(monkeypatch, admin_subscriptions, _extend)
    result = subscription_actions.cancel_now(
        first_db,
        events,
        admin_actor,
        {
            "id": str(subscription_id),
            "reason": "Requested through support",
            "updatedAt": updated_at,
        },
    )

    assert concurrent[0].ok is True
    assert result.ok is False
    assert result.error == STALE_DATA_ERROR

    check = file_sessionmaker()
    subscription = check.get(Subscription, subscription_id)
    assert subscription.status == SubscriptionStatus.active
    assert as_utc(subscription.ends_at) == extended_to
    for session in (first_db, second_db, check):
        session.close()
