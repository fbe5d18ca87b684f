"""Subscription lifecycle.

One subscription per user, moving through::

    (none) -> active -> renewing -> canceled | expired
              renewing -> active      (scheduled cancellation cleared)
              active|renewing -> canceled  (admin cancel-now)
              canceled|expired -> active   (renew)

``stage_*`` functions mutate and flush inside the caller's transaction and
return the event describing the transition; the caller commits and then
publishes it. The un-prefixed functions do both for standalone use.
"""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.catalog import Plan, PlanCycle
from app.models.subscription import Subscription, SubscriptionStatus
from app.services import entitlements as entitlement_service
from app.services.common import add_months, as_utc, coerce_uuid, get_or_404, later_of, utc_now
from app.services.events.types import BillingEvent, BillingEventType

logger = logging.getLogger(__name__)

CYCLE_MONTHS = {
    PlanCycle.monthly: 1,
    PlanCycle.quarterly: 3,
    PlanCycle.yearly: 12,
}

SERVING_STATUSES = (SubscriptionStatus.active, SubscriptionStatus.renewing)


def cycle_months(cycle: PlanCycle) -> int:
    return CYCLE_MONTHS[cycle]


def next_period_end(anchor: datetime, cycle: PlanCycle) -> datetime:
    """End of one billing cycle starting at ``anchor`` (calendar months, UTC)."""
    return add_months(as_utc(anchor), cycle_months(cycle))


def get_for_user(db: Session, user_id) -> Subscription | None:
    return (
        db.query(Subscription)
        .filter(Subscription.user_id == coerce_uuid(user_id))
        .first()
    )


def _event(event_type: BillingEventType, subscription: Subscription, **payload) -> BillingEvent:
    return BillingEvent.for_subscription(event_type, subscription, payload=payload)


def stage_activate_or_start(
    db: Session,
    user_id,
    plan: Plan,
    starts_at: datetime | None = None,
    ends_at: datetime | None = None,
    provider_ref: str | None = None,
    now: datetime | None = None,
) -> tuple[Subscription, BillingEvent]:
    now = as_utc(now) or utc_now()
    subscription = get_for_user(db, user_id)
    if subscription is None:
        start = as_utc(starts_at) or now
        end = as_utc(ends_at) or next_period_end(start, plan.cycle)
        if end < start:
            raise HTTPException(status_code=400, detail="Subscription cannot end before it starts")
        subscription = Subscription(
            user_id=coerce_uuid(user_id),
            plan_id=plan.id,
            status=SubscriptionStatus.active,
            started_at=start,
            ends_at=end,
            renewal_at=end,
            cancel_at_period_end=False,
            provider_ref=provider_ref,
        )
        try:
            with db.begin_nested():
                db.add(subscription)
                db.flush()
        except IntegrityError:
            # Another request created it first; extend that one instead.
            subscription = get_for_user(db, user_id)
            if subscription is None:
                raise
        else:
            logger.info("Subscription %s started for user %s", subscription.id, user_id)
            return subscription, _event(
                BillingEventType.subscription_activated, subscription, source="start"
            )

    was_serving = subscription.status in SERVING_STATUSES
    anchor = later_of(now, subscription.ends_at)
    if not was_serving:
        subscription.started_at = as_utc(starts_at) or anchor
        anchor = as_utc(subscription.started_at)
    end = as_utc(ends_at) or next_period_end(anchor, plan.cycle)
    if end < as_utc(subscription.started_at):
        raise HTTPException(status_code=400, detail="Subscription cannot end before it starts")
    subscription.plan_id = plan.id
    subscription.status = SubscriptionStatus.active
    subscription.ends_at = end
    subscription.renewal_at = end
    subscription.cancel_at_period_end = False
    if provider_ref:
        subscription.provider_ref = provider_ref
    db.flush()
    event_type = (
        BillingEventType.subscription_activated
        if was_serving
        else BillingEventType.subscription_restarted
    )
    return subscription, _event(event_type, subscription, source="extend")


def stage_renew(
    db: Session,
    subscription: Subscription,
    plan: Plan | None = None,
    provider_ref: str | None = None,
    now: datetime | None = None,
) -> tuple[Subscription, BillingEvent]:
    """Extend by one cycle from the later of ``now`` and the current end.

    Active and renewing subscriptions keep their status. A canceled or
    expired one comes back as active with a period starting at the anchor.
    """
    plan = plan or subscription.plan
    now = as_utc(now) or utc_now()
    previous_status = subscription.status
    anchor = later_of(now, subscription.ends_at)
    if previous_status not in SERVING_STATUSES:
        subscription.status = SubscriptionStatus.active
        subscription.started_at = anchor
        logger.info(
            "Subscription %s renewed from %s", subscription.id, previous_status.value
        )
    subscription.plan_id = plan.id
    subscription.ends_at = next_period_end(anchor, plan.cycle)
    subscription.renewal_at = subscription.ends_at
    subscription.cancel_at_period_end = False
    if provider_ref:
        subscription.provider_ref = provider_ref
    db.flush()
    return subscription, _event(
        BillingEventType.subscription_renewed,
        subscription,
        anchor=anchor.isoformat(),
        from_status=previous_status.value,
    )


def stage_payment_period(
    db: Session,
    user_id,
    plan: Plan,
    provider_ref: str | None = None,
    now: datetime | None = None,
) -> tuple[Subscription, BillingEvent]:
    """Extend a serving subscription by one paid cycle, or (re)start one."""
    subscription = get_for_user(db, user_id)
    if subscription is not None and subscription.status in SERVING_STATUSES:
        return stage_renew(db, subscription, plan=plan, provider_ref=provider_ref, now=now)
    return stage_activate_or_start(db, user_id, plan, provider_ref=provider_ref, now=now)


def stage_mark_expired(db: Session, subscription: Subscription) -> tuple[Subscription, BillingEvent | None]:
    if subscription.status == SubscriptionStatus.expired:
        return subscription, None
    if subscription.status == SubscriptionStatus.canceled:
        raise HTTPException(status_code=409, detail="Canceled subscriptions cannot expire")
    previous_status = subscription.status
    subscription.status = SubscriptionStatus.expired
    subscription.renewal_at = None
    db.flush()
    return subscription, _event(
        BillingEventType.subscription_expired,
        subscription,
        from_status=previous_status.value,
    )


def stage_set_cancel_at_period_end(
    db: Session, subscription: Subscription, cancel: bool
) -> tuple[Subscription, BillingEvent | None]:
    if bool(subscription.cancel_at_period_end) == cancel:
        return subscription, None
    if cancel:
        if subscription.status not in SERVING_STATUSES:
            raise HTTPException(
                status_code=409,
                detail="Cancellation can only be scheduled for an active subscription",
            )
        subscription.cancel_at_period_end = True
        subscription.renewal_at = None
        if subscription.status == SubscriptionStatus.active:
            subscription.status = SubscriptionStatus.renewing
        event_type = BillingEventType.subscription_cancel_at_period_end_set
    else:
        subscription.cancel_at_period_end = False
        if subscription.status == SubscriptionStatus.renewing:
            subscription.status = SubscriptionStatus.active
        if subscription.status in SERVING_STATUSES:
            subscription.renewal_at = subscription.ends_at
        event_type = BillingEventType.subscription_cancel_at_period_end_cleared
    db.flush()
    return subscription, _event(event_type, subscription, cancel_at_period_end=cancel)


def stage_cancel_now(
    db: Session, subscription: Subscription, now: datetime | None = None
) -> tuple[Subscription, BillingEvent]:
    if subscription.status not in SERVING_STATUSES:
        raise HTTPException(
            status_code=409,
            detail="Only active or renewing subscriptions can be canceled",
        )
    now = as_utc(now) or utc_now()
    previous_status = subscription.status
    if as_utc(subscription.started_at) > now:
        subscription.started_at = now
    subscription.status = SubscriptionStatus.canceled
    subscription.ends_at = now
    subscription.renewal_at = None
    subscription.cancel_at_period_end = False
    entitlement_service.revoke_publish_access(db, subscription.user_id, now)
    db.flush()
    return subscription, _event(
        BillingEventType.subscription_admin_cancelled,
        subscription,
        from_status=previous_status.value,
    )


def stage_adjust_ends_at(
    db: Session,
    subscription: Subscription,
    ends_at: datetime,
    renewal_at: datetime | None = None,
) -> tuple[Subscription, BillingEvent]:
    ends_at = as_utc(ends_at)
    if ends_at < as_utc(subscription.started_at):
        raise HTTPException(
            status_code=400,
            detail="New end date must not be before the subscription start",
        )
    previous_ends_at = as_utc(subscription.ends_at)
    subscription.ends_at = ends_at
    if renewal_at is not None:
        subscription.renewal_at = as_utc(renewal_at)
    elif subscription.status == SubscriptionStatus.active and not subscription.cancel_at_period_end:
        subscription.renewal_at = ends_at
    entitlement_service.set_publish_expiry(db, subscription.user_id, ends_at)
    db.flush()
    return subscription, _event(
        BillingEventType.subscription_admin_ends_adjusted,
        subscription,
        previous_ends_at=previous_ends_at.isoformat(),
    )


def _commit_and_publish(db: Session, events, event: BillingEvent | None) -> None:
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    if event is not None:
        events.publish(db, event)


def activate_or_start(
    db: Session,
    events,
    user_id,
    plan_id,
    starts_at: datetime | None = None,
    ends_at: datetime | None = None,
    provider_ref: str | None = None,
) -> Subscription:
    plan = get_or_404(db, Plan, plan_id, detail="Plan not found")
    try:
        subscription, event = stage_activate_or_start(
            db, user_id, plan, starts_at=starts_at, ends_at=ends_at, provider_ref=provider_ref
        )
    except Exception:
        db.rollback()
        raise
    _commit_and_publish(db, events, event)
    db.refresh(subscription)
    return subscription


def renew(db: Session, events, subscription_id, provider_ref: str | None = None) -> Subscription:
    subscription = get_or_404(db, Subscription, subscription_id, detail="Subscription not found")
    try:
        subscription, event = stage_renew(db, subscription, provider_ref=provider_ref)
    except Exception:
        db.rollback()
        raise
    _commit_and_publish(db, events, event)
    db.refresh(subscription)
    return subscription


def mark_expired(db: Session, events, subscription_id) -> Subscription:
    subscription = get_or_404(db, Subscription, subscription_id, detail="Subscription not found")
    try:
        subscription, event = stage_mark_expired(db, subscription)
    except Exception:
        db.rollback()
        raise
    _commit_and_publish(db, events, event)
    db.refresh(subscription)
    return subscription


def set_cancel_at_period_end(db: Session, events, subscription_id, cancel: bool) -> Subscription:
    subscription = get_or_404(db, Subscription, subscription_id, detail="Subscription not found")
    try:
        subscription, event = stage_set_cancel_at_period_end(db, subscription, cancel)
    except Exception:
        db.rollback()
        raise
    _commit_and_publish(db, events, event)
    db.refresh(subscription)
    return subscription


def expire_lapsed_subscriptions(
    db: Session,
    events,
    run_at: datetime | None = None,
    dry_run: bool = False,
) -> dict:
    """Expire serving subscriptions whose period has ended.

    Meant for the periodic sweep; canceled subscriptions are left alone.

    Args:
        db: Database session
        events: BillingEventDispatcher for the expiry events
        run_at: Reference time (defaults to now)
        dry_run: If True, only count

    Returns:
        Summary dict with counts
    """
    run_at = as_utc(run_at) or utc_now()
    lapsed = (
        db.query(Subscription)
        .filter(Subscription.status.in_(SERVING_STATUSES))
        .filter(Subscription.ends_at <= run_at)
        .order_by(Subscription.ends_at.asc())
        .all()
    )
    if dry_run:
        return {"run_at": run_at, "subscriptions_expired": len(lapsed), "dry_run": True}

    pending: list[BillingEvent] = []
    for subscription in lapsed:
        _, event = stage_mark_expired(db, subscription)
        if event is not None:
            pending.append(event)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    for event in pending:
        events.publish(db, event)

    logger.info(f"Expired {len(pending)} lapsed subscriptions (run_at={run_at.isoformat()})")
    return {"run_at": run_at, "subscriptions_expired": len(pending), "dry_run": False}
