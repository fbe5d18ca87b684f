"""Entitlement engine.

Turns a paid Payment into the access it bought:

- subscription prices extend the ``can_publish_profile`` expiry (and the
  user's subscription) by the plan's cycle
- job-post prices add credits to the ``job_post_credit`` balance, once per
  payment, guarded by the ``job_credit_grants.payment_id`` constraint
- anything else is reported as unsupported without failing

Job post credits are spent one at a time with ``consume_job_credit``; the
access queries (``has_publish_access``, ``job_credit_balance``) treat an
expired window as no access.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Union, assert_never
from uuid import UUID

from fastapi import HTTPException
from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.billing import Invoice, Payment, PaymentStatus
from app.models.catalog import CheckoutSession, Plan, Price, Product, ProductType
from app.models.entitlement import EntitlementKey, JobCreditGrant, UserEntitlement
from app.services import audit as audit_service
from app.services.common import add_months, as_utc, coerce_uuid, later_of, utc_now

logger = logging.getLogger(__name__)

PUBLISH_ENTITLEMENT = EntitlementKey.can_publish_profile
JOB_CREDIT_ENTITLEMENT = EntitlementKey.job_post_credit

_CREDIT_METADATA_KEYS = ("jobCredits", "credits", "job_credits")


class EntitlementOutcome(enum.Enum):
    applied = "applied"
    already_applied = "already_applied"
    unsupported = "unsupported"
    payment_not_found = "payment_not_found"
    payment_not_paid = "payment_not_paid"
    price_not_available = "price_not_available"


_NON_FATAL = {
    EntitlementOutcome.applied,
    EntitlementOutcome.already_applied,
    EntitlementOutcome.unsupported,
}


@dataclass
class EntitlementResult:
    outcome: EntitlementOutcome
    kind: ProductType | None = None
    expires_at: datetime | None = None
    remaining_credits: int | None = None
    credits_granted: int = 0
    subscription_id: UUID | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome in _NON_FATAL


@dataclass(frozen=True)
class SubscriptionIntent:
    price: Price
    product: Product
    plan: Plan


@dataclass(frozen=True)
class JobCreditIntent:
    price: Price
    product: Product
    credits: int


@dataclass(frozen=True)
class UnsupportedIntent:
    price: Price
    reason: str


PriceIntent = Union[SubscriptionIntent, JobCreditIntent, UnsupportedIntent]


def _credit_value(source) -> int | None:
    if not isinstance(source, dict):
        return None
    for key in _CREDIT_METADATA_KEYS:
        raw = source.get(key)
        try:
            value = int(raw)
        except (TypeError, ValueError):
            continue
        if value > 0:
            return value
    return None


def resolve_job_credits(
    price: Price, product: Product, checkout_session: CheckoutSession | None = None
) -> int:
    """Credits bought by one purchase: price, then product, then session metadata."""
    sources = [price.metadata_, product.metadata_]
    if checkout_session is not None:
        sources.append(checkout_session.provider_payload)
    for source in sources:
        value = _credit_value(source)
        if value:
            return value
    return 1


def resolve_price_intent(
    price: Price, checkout_session: CheckoutSession | None = None
) -> PriceIntent:
    product = price.product
    product_type = product.type
    if product_type is ProductType.subscription:
        if price.plan is None:
            return UnsupportedIntent(price, "Subscription price has no plan attached")
        return SubscriptionIntent(price=price, product=product, plan=price.plan)
    if product_type is ProductType.job_post:
        return JobCreditIntent(
            price=price,
            product=product,
            credits=resolve_job_credits(price, product, checkout_session),
        )
    if product_type is ProductType.course:
        return UnsupportedIntent(price, "Course purchases do not grant entitlements")
    assert_never(product_type)


def get_entitlement(db: Session, user_id, key: EntitlementKey) -> UserEntitlement | None:
    return (
        db.query(UserEntitlement)
        .filter(UserEntitlement.user_id == coerce_uuid(user_id))
        .filter(UserEntitlement.key == key)
        .first()
    )


def _get_or_create_entitlement(db: Session, user_id, key: EntitlementKey) -> UserEntitlement:
    entitlement = get_entitlement(db, user_id, key)
    if entitlement is not None:
        return entitlement
    entitlement = UserEntitlement(user_id=coerce_uuid(user_id), key=key)
    try:
        with db.begin_nested():
            db.add(entitlement)
            db.flush()
    except IntegrityError:
        # Created concurrently; use the committed row.
        entitlement = get_entitlement(db, user_id, key)
        if entitlement is None:
            raise
    return entitlement


def set_publish_expiry(db: Session, user_id, expires_at: datetime) -> UserEntitlement:
    """Point the publish entitlement at ``expires_at`` (admin adjustments and sync)."""
    entitlement = _get_or_create_entitlement(db, user_id, PUBLISH_ENTITLEMENT)
    entitlement.expires_at = as_utc(expires_at)
    db.flush()
    return entitlement


def revoke_publish_access(db: Session, user_id, now: datetime | None = None) -> UserEntitlement | None:
    """End publish access at ``now``; later expiries are pulled back, earlier ones kept."""
    now = as_utc(now) or utc_now()
    entitlement = get_entitlement(db, user_id, PUBLISH_ENTITLEMENT)
    if entitlement is None:
        return None
    current = as_utc(entitlement.expires_at)
    if current is None or current > now:
        entitlement.expires_at = now
        db.flush()
    return entitlement


def has_publish_access(db: Session, user_id, now: datetime | None = None) -> bool:
    now = as_utc(now) or utc_now()
    entitlement = get_entitlement(db, user_id, PUBLISH_ENTITLEMENT)
    if entitlement is None or entitlement.expires_at is None:
        return False
    return as_utc(entitlement.expires_at) > now


def _credits_in_window(entitlement: UserEntitlement | None, now: datetime) -> bool:
    if entitlement is None:
        return False
    return entitlement.expires_at is None or as_utc(entitlement.expires_at) > now


def job_credit_balance(db: Session, user_id, now: datetime | None = None) -> int:
    """Usable job post credits; an expired balance counts as zero."""
    now = as_utc(now) or utc_now()
    entitlement = get_entitlement(db, user_id, JOB_CREDIT_ENTITLEMENT)
    if not _credits_in_window(entitlement, now):
        return 0
    return max(entitlement.remaining_credits or 0, 0)


def has_job_credit(db: Session, user_id, now: datetime | None = None) -> bool:
    return job_credit_balance(db, user_id, now) > 0


def entitlement_summary(db: Session, user_id, now: datetime | None = None) -> dict:
    now = as_utc(now) or utc_now()
    publish = get_entitlement(db, user_id, PUBLISH_ENTITLEMENT)
    credits = get_entitlement(db, user_id, JOB_CREDIT_ENTITLEMENT)
    return {
        "user_id": str(user_id),
        "can_publish": has_publish_access(db, user_id, now),
        "publish_expires_at": _iso(publish.expires_at) if publish else None,
        "job_credits": job_credit_balance(db, user_id, now),
        "job_credits_expire_at": _iso(credits.expires_at) if credits else None,
    }


def assert_has_job_credit(db: Session, user_id, now: datetime | None = None) -> UserEntitlement:
    """Return the credit balance row, or raise 409 saying why it cannot be used."""
    now = as_utc(now) or utc_now()
    entitlement = get_entitlement(db, user_id, JOB_CREDIT_ENTITLEMENT)
    if entitlement is None:
        raise HTTPException(status_code=409, detail="No job post credits purchased")
    if not _credits_in_window(entitlement, now):
        raise HTTPException(status_code=409, detail="Job post credits have expired")
    if (entitlement.remaining_credits or 0) <= 0:
        raise HTTPException(status_code=409, detail="No job post credits remaining")
    return entitlement


def consume_job_credit(db: Session, user_id, now: datetime | None = None) -> int:
    """Take one job post credit inside the caller's transaction.

    The decrement is a conditional UPDATE on a positive, unexpired balance,
    so two consumers racing for the last credit cannot both succeed. Returns
    the remaining balance; the caller commits.
    """
    now = as_utc(now) or utc_now()
    entitlement = assert_has_job_credit(db, user_id, now)
    result = db.execute(
        update(UserEntitlement)
        .where(UserEntitlement.id == entitlement.id)
        .where(UserEntitlement.remaining_credits > 0)
        .where(or_(UserEntitlement.expires_at.is_(None), UserEntitlement.expires_at > now))
        .values(remaining_credits=UserEntitlement.remaining_credits - 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.info("Job credit for user %s was taken concurrently", user_id)
        raise HTTPException(
            status_code=409,
            detail="Job post credit was used by another request; try again",
        )
    db.refresh(entitlement)
    logger.info(
        "Consumed a job credit for user %s (%s left)", user_id, entitlement.remaining_credits
    )
    return entitlement.remaining_credits


def spend_job_credit(db: Session, user_id) -> int:
    """Consume one job post credit and commit."""
    try:
        remaining = consume_job_credit(db, user_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return remaining


def _resolve_price(db: Session, payment: Payment, price_id) -> Price | None:
    if price_id is not None:
        return db.get(Price, coerce_uuid(price_id))
    if payment.checkout_session is not None:
        return payment.checkout_session.price
    return None


def apply_payment(
    db: Session,
    events,
    payment_id,
    price_id=None,
    invoice_id=None,
    now: datetime | None = None,
) -> EntitlementResult:
    """Apply the entitlement effect of a paid payment exactly once.

    Args:
        db: Database session
        events: BillingEventDispatcher used for lifecycle events
        payment_id: Payment to apply
        price_id: Price paid for (defaults to the checkout session's price)
        invoice_id: Sale invoice to annotate with the coverage window
        now: Reference time (defaults to now)

    Returns:
        EntitlementResult; lookup failures are reported in ``outcome``
    """
    payment = db.get(Payment, coerce_uuid(payment_id))
    if payment is None:
        return EntitlementResult(EntitlementOutcome.payment_not_found, message="Payment not found")
    if payment.status != PaymentStatus.paid:
        return EntitlementResult(
            EntitlementOutcome.payment_not_paid,
            message=f"Payment is {payment.status.value}",
        )
    price = _resolve_price(db, payment, price_id)
    if price is None or not price.active:
        return EntitlementResult(
            EntitlementOutcome.price_not_available,
            message="Price is missing or inactive",
        )

    intent = resolve_price_intent(price, payment.checkout_session)
    if isinstance(intent, SubscriptionIntent):
        return _apply_subscription(db, events, payment, intent, invoice_id, now)
    if isinstance(intent, JobCreditIntent):
        return _apply_job_credits(db, payment, intent)
    if isinstance(intent, UnsupportedIntent):
        logger.info(
            "Payment %s bought price %s with no entitlement: %s",
            payment.id,
            price.id,
            intent.reason,
        )
        return EntitlementResult(
            EntitlementOutcome.unsupported,
            kind=price.product.type,
            message=intent.reason,
        )
    assert_never(intent)


def _apply_subscription(
    db: Session,
    events,
    payment: Payment,
    intent: SubscriptionIntent,
    invoice_id,
    now: datetime | None,
) -> EntitlementResult:
    from app.services import subscriptions as subscription_service

    now = as_utc(now) or utc_now()
    idempotency_key = f"subscription:{payment.id}"
    entitlement = get_entitlement(db, payment.user_id, PUBLISH_ENTITLEMENT)
    if entitlement is not None and entitlement.updated_at is not None and (
        as_utc(entitlement.updated_at) >= as_utc(payment.updated_at)
        or audit_service.find_by_idempotency_key(db, idempotency_key) is not None
    ):
        audit_service.record_audit(
            db,
            actor=None,
            resource_type="payment",
            resource_id=payment.id,
            action="SUBSCRIPTION_DUPLICATE_GUARD",
            metadata={"key": idempotency_key, "expires_at": _iso(entitlement.expires_at)},
        )
        db.commit()
        return EntitlementResult(
            EntitlementOutcome.already_applied,
            kind=ProductType.subscription,
            expires_at=as_utc(entitlement.expires_at),
        )

    try:
        subscription, event = subscription_service.stage_payment_period(
            db,
            user_id=payment.user_id,
            plan=intent.plan,
            provider_ref=payment.provider_ref,
            now=now,
        )
        previous_expiry = entitlement.expires_at if entitlement is not None else None
        anchor = later_of(now, previous_expiry)
        new_expiry = add_months(anchor, subscription_service.cycle_months(intent.plan.cycle))
        entitlement = _get_or_create_entitlement(db, payment.user_id, PUBLISH_ENTITLEMENT)
        entitlement.expires_at = new_expiry

        if invoice_id is not None:
            invoice = db.get(Invoice, coerce_uuid(invoice_id))
            if invoice is not None:
                invoice.plan_id = intent.plan.id
                invoice.plan_name = intent.plan.name
                invoice.plan_cycle = intent.plan.cycle.value
                invoice.unit_amount = intent.price.amount
                invoice.quantity = 1
                invoice.period_start = anchor
                invoice.period_end = new_expiry

        audit_service.record_audit(
            db,
            actor=None,
            resource_type="payment",
            resource_id=payment.id,
            action="SUBSCRIPTION_GRANTED",
            metadata={
                "plan_id": str(intent.plan.id),
                "previous_expires_at": _iso(previous_expiry),
                "expires_at": _iso(new_expiry),
                "subscription_id": str(subscription.id),
            },
            idempotency_key=idempotency_key,
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        if audit_service.find_by_idempotency_key(db, idempotency_key) is None:
            raise
        current = get_entitlement(db, payment.user_id, PUBLISH_ENTITLEMENT)
        return EntitlementResult(
            EntitlementOutcome.already_applied,
            kind=ProductType.subscription,
            expires_at=as_utc(current.expires_at) if current else None,
        )
    except Exception:
        db.rollback()
        raise

    subscription_id = subscription.id
    events.publish(db, event)
    logger.info(
        "Publish access for user %s extended to %s by payment %s",
        payment.user_id,
        new_expiry.isoformat(),
        payment.id,
    )
    return EntitlementResult(
        EntitlementOutcome.applied,
        kind=ProductType.subscription,
        expires_at=new_expiry,
        subscription_id=subscription_id,
    )


def _apply_job_credits(db: Session, payment: Payment, intent: JobCreditIntent) -> EntitlementResult:
    payment_id = payment.id
    user_id = payment.user_id
    try:
        with db.begin_nested():
            db.add(
                JobCreditGrant(
                    user_id=user_id,
                    payment_id=payment_id,
                    credits=intent.credits,
                    reason="purchase",
                )
            )
            db.flush()
    except IntegrityError:
        balance = get_entitlement(db, user_id, JOB_CREDIT_ENTITLEMENT)
        audit_service.record_audit(
            db,
            actor=None,
            resource_type="payment",
            resource_id=payment_id,
            action="JOB_CREDIT_DUPLICATE_GUARD",
            metadata={"key": f"job-credit:{payment_id}"},
        )
        db.commit()
        return EntitlementResult(
            EntitlementOutcome.already_applied,
            kind=ProductType.job_post,
            remaining_credits=balance.remaining_credits if balance else None,
        )

    try:
        balance = _get_or_create_entitlement(db, user_id, JOB_CREDIT_ENTITLEMENT)
        balance.remaining_credits = (
            func.coalesce(UserEntitlement.remaining_credits, 0) + intent.credits
        )
        db.flush()
        audit_service.record_audit(
            db,
            actor=None,
            resource_type="payment",
            resource_id=payment_id,
            action="JOB_CREDIT_GRANTED",
            metadata={"credits": intent.credits, "product_id": str(intent.product.id)},
            idempotency_key=f"job-credit:{payment_id}",
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(balance)
    logger.info(
        "Granted %s job credits to user %s for payment %s",
        intent.credits,
        user_id,
        payment_id,
    )
    return EntitlementResult(
        EntitlementOutcome.applied,
        kind=ProductType.job_post,
        remaining_credits=balance.remaining_credits,
        credits_granted=intent.credits,
    )


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None
