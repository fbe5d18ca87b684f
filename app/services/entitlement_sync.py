"""Aligns stored entitlements with the subscription that should back them."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from app.models.subscription import Subscription
from app.services import entitlements as entitlement_service
from app.services import subscriptions as subscription_service
from app.services.common import as_utc, coerce_uuid, utc_now
from app.services.events.types import BillingEvent

logger = logging.getLogger(__name__)


def stage_sync_user(
    db: Session, user_id, now: datetime | None = None
) -> tuple[dict, list[BillingEvent]]:
    """Recompute publish access for one user inside the caller's transaction.

    A serving subscription past its end is expired first. Publish access then
    runs until the subscription's end while it is serving, and is revoked
    otherwise.
    """
    now = as_utc(now) or utc_now()
    user_id = coerce_uuid(user_id)
    pending: list[BillingEvent] = []
    subscription = subscription_service.get_for_user(db, user_id)
    entitlement = entitlement_service.get_entitlement(
        db, user_id, entitlement_service.PUBLISH_ENTITLEMENT
    )
    before = as_utc(entitlement.expires_at) if entitlement else None

    if (
        subscription is not None
        and subscription.status in subscription_service.SERVING_STATUSES
        and as_utc(subscription.ends_at) <= now
    ):
        _, event = subscription_service.stage_mark_expired(db, subscription)
        if event is not None:
            pending.append(event)

    if subscription is not None and subscription.status in subscription_service.SERVING_STATUSES:
        target = as_utc(subscription.ends_at)
        if before != target:
            entitlement = entitlement_service.set_publish_expiry(db, user_id, target)
    else:
        entitlement = entitlement_service.revoke_publish_access(db, user_id, now)

    after = as_utc(entitlement.expires_at) if entitlement else None
    summary = {
        "user_id": str(user_id),
        "subscription_id": str(subscription.id) if subscription else None,
        "subscription_status": subscription.status.value if subscription else None,
        "expires_at_before": before.isoformat() if before else None,
        "expires_at": after.isoformat() if after else None,
        "changed": before != after or bool(pending),
    }
    return summary, pending


def sync_user(db: Session, events, user_id, now: datetime | None = None) -> dict:
    try:
        summary, pending = stage_sync_user(db, user_id, now=now)
        db.commit()
    except Exception:
        db.rollback()
        raise
    for event in pending:
        events.publish(db, event)
    return summary


def sync_all(db: Session, events, now: datetime | None = None) -> dict:
    """Run ``sync_user`` for every user holding a subscription.

    Returns:
        Summary dict with counts; one user's failure does not stop the run
    """
    now = as_utc(now) or utc_now()
    user_ids = [row[0] for row in db.query(Subscription.user_id).all()]
    changed = 0
    failed = 0
    for user_id in user_ids:
        try:
            summary = sync_user(db, events, user_id, now=now)
        except Exception:
            failed += 1
            logger.exception("Entitlement sync failed for user %s", user_id)
            continue
        if summary["changed"]:
            changed += 1
    result = {
        "run_at": now,
        "users": len(user_ids),
        "changed": changed,
        "failed": failed,
    }
    logger.info(f"Entitlement sync completed: {result}")
    return result
