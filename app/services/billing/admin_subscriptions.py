"""Administrative subscription workflows."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.models.subscription import Subscription
from app.schemas.admin_billing import (
    AdjustEndsAtInput,
    AdminActionResult,
    AdminActor,
    CancelAtPeriodEndInput,
    CancelNowInput,
    RecomputeEntitlementsInput,
)
from app.schemas.snapshots import dump_state
from app.services import audit as audit_service
from app.services import entitlement_sync as sync_service
from app.services import entitlements as entitlement_service
from app.services import subscriptions as subscription_service
from app.services.billing._common import (
    already_processed,
    assert_fresh,
    commit_action,
    duplicate,
    failure,
    lock_for_update,
    ok,
    reject,
    require_admin,
    target_of,
)
from app.services.common import as_utc, utc_now
from app.services.events.types import BillingEvent, BillingEventType

logger = logging.getLogger(__name__)


def _publish_entitlement(db: Session, user_id):
    return entitlement_service.get_entitlement(
        db, user_id, entitlement_service.PUBLISH_ENTITLEMENT
    )


def _subscription_data(subscription: Subscription) -> dict[str, Any]:
    return {
        "subscription_id": str(subscription.id),
        "status": subscription.status.value,
        "ends_at": as_utc(subscription.ends_at).isoformat(),
        "cancel_at_period_end": bool(subscription.cancel_at_period_end),
    }


class SubscriptionActions:
    @staticmethod
    def cancel_now(db: Session, events, actor: AdminActor | None, data: dict[str, Any]) -> AdminActionResult:
        """End an active or renewing subscription immediately and revoke publish access."""
        try:
            require_admin(actor)
            payload = CancelNowInput.model_validate(data)
            if already_processed(db, payload.idempotency_key):
                return duplicate()

            subscription = lock_for_update(db, Subscription, payload.id, "Subscription not found")
            assert_fresh(subscription.updated_at, payload.updated_at)
            before = dump_state(
                subscription=subscription,
                entitlement=_publish_entitlement(db, subscription.user_id),
            )
            if subscription.status not in subscription_service.SERVING_STATUSES:
                raise reject(
                    db,
                    actor=actor,
                    resource_type="subscription",
                    resource_id=subscription.id,
                    action="ADMIN_CANCEL_NOW",
                    reason=payload.reason,
                    message=f"Subscription is {subscription.status.value} and cannot be canceled",
                    before=before,
                )
            subscription, event = subscription_service.stage_cancel_now(db, subscription, utc_now())
            event.actor = str(actor.id)
            audit_service.record_audit(
                db,
                actor=actor,
                resource_type="subscription",
                resource_id=subscription.id,
                action="ADMIN_CANCEL_NOW",
                reason=payload.reason,
                before=before,
                after=dump_state(
                    subscription=subscription,
                    entitlement=_publish_entitlement(db, subscription.user_id),
                ),
                idempotency_key=payload.idempotency_key,
            )
            result = _subscription_data(subscription)
            if not commit_action(db, payload.idempotency_key):
                return duplicate()
        except Exception as exc:
            return failure(db, exc, action="cancel_now", actor=actor, target=target_of(data, "id"))

        events.publish(db, event)
        return ok(result)

    @staticmethod
    def set_cancel_at_period_end(
        db: Session, events, actor: AdminActor | None, data: dict[str, Any]
    ) -> AdminActionResult:
        """Schedule or clear cancellation at the end of the current period.

        Asking for the value already in place is a no-op that is still audited.
        """
        try:
            require_admin(actor)
            payload = CancelAtPeriodEndInput.model_validate(data)
            if already_processed(db, payload.idempotency_key):
                return duplicate()

            action = (
                "ADMIN_SET_CANCEL_AT_PERIOD_END"
                if payload.cancel
                else "ADMIN_CLEAR_CANCEL_AT_PERIOD_END"
            )
            subscription = lock_for_update(db, Subscription, payload.id, "Subscription not found")
            assert_fresh(subscription.updated_at, payload.updated_at)
            before = dump_state(subscription=subscription)
            unchanged = bool(subscription.cancel_at_period_end) == payload.cancel
            if not unchanged and subscription.status not in subscription_service.SERVING_STATUSES:
                raise reject(
                    db,
                    actor=actor,
                    resource_type="subscription",
                    resource_id=subscription.id,
                    action=action,
                    reason=payload.reason,
                    message=f"Subscription is {subscription.status.value} and cannot be changed",
                    before=before,
                    metadata={"cancel": payload.cancel},
                )

            pending: list[BillingEvent] = []
            if not unchanged:
                subscription, event = subscription_service.stage_set_cancel_at_period_end(
                    db, subscription, payload.cancel
                )
                if event is not None:
                    event.actor = str(actor.id)
                    pending.append(event)
                pending.append(
                    BillingEvent.for_subscription(
                        BillingEventType.subscription_admin_cancel_at_period_end,
                        subscription,
                        payload={"cancel_at_period_end": payload.cancel},
                        actor=str(actor.id),
                    )
                )
            audit_service.record_audit(
                db,
                actor=actor,
                resource_type="subscription",
                resource_id=subscription.id,
                action=action,
                reason=payload.reason,
                before=before,
                after=dump_state(subscription=subscription),
                metadata={"cancel": payload.cancel, "unchanged": unchanged},
                idempotency_key=payload.idempotency_key,
            )
            result = {**_subscription_data(subscription), "unchanged": unchanged}
            if not commit_action(db, payload.idempotency_key):
                return duplicate()
        except Exception as exc:
            return failure(
                db, exc, action="set_cancel_at_period_end", actor=actor, target=target_of(data, "id")
            )

        for event in pending:
            events.publish(db, event)
        return ok(result)

    @staticmethod
    def adjust_ends_at(db: Session, events, actor: AdminActor | None, data: dict[str, Any]) -> AdminActionResult:
        """Move a subscription's end (and optionally renewal) date; publish access follows."""
        try:
            require_admin(actor)
            payload = AdjustEndsAtInput.model_validate(data)
            if already_processed(db, payload.idempotency_key):
                return duplicate()

            subscription = lock_for_update(db, Subscription, payload.id, "Subscription not found")
            assert_fresh(subscription.updated_at, payload.updated_at)
            before = dump_state(
                subscription=subscription,
                entitlement=_publish_entitlement(db, subscription.user_id),
            )
            if payload.new_ends_at < as_utc(subscription.started_at):
                raise HTTPException(
                    status_code=400,
                    detail="New end date must not be before the subscription start",
                )
            subscription, event = subscription_service.stage_adjust_ends_at(
                db, subscription, payload.new_ends_at, payload.new_renewal_at
            )
            event.actor = str(actor.id)
            audit_service.record_audit(
                db,
                actor=actor,
                resource_type="subscription",
                resource_id=subscription.id,
                action="ADMIN_ADJUST_ENDS_AT",
                reason=payload.reason,
                before=before,
                after=dump_state(
                    subscription=subscription,
                    entitlement=_publish_entitlement(db, subscription.user_id),
                ),
                metadata={
                    "new_ends_at": payload.new_ends_at.isoformat(),
                    "new_renewal_at": (
                        payload.new_renewal_at.isoformat() if payload.new_renewal_at else None
                    ),
                },
                idempotency_key=payload.idempotency_key,
            )
            result = _subscription_data(subscription)
            if not commit_action(db, payload.idempotency_key):
                return duplicate()
        except Exception as exc:
            return failure(db, exc, action="adjust_ends_at", actor=actor, target=target_of(data, "id"))

        events.publish(db, event)
        return ok(result)

    @staticmethod
    def recompute_entitlements(
        db: Session, events, actor: AdminActor | None, data: dict[str, Any]
    ) -> AdminActionResult:
        """Re-derive a user's publish access from their subscription."""
        try:
            require_admin(actor)
            payload = RecomputeEntitlementsInput.model_validate(data)
            if already_processed(db, payload.idempotency_key):
                return duplicate()

            subscription = lock_for_update(
                db, Subscription, payload.subscription_id, "Subscription not found"
            )
            if subscription.user_id != payload.user_id:
                raise HTTPException(
                    status_code=400,
                    detail="Subscription does not belong to this user",
                )
            before = dump_state(
                subscription=subscription,
                entitlement=_publish_entitlement(db, payload.user_id),
            )
            summary, pending = sync_service.stage_sync_user(db, payload.user_id, utc_now())
            for event in pending:
                event.actor = str(actor.id)
            audit_service.record_audit(
                db,
                actor=actor,
                resource_type="subscription",
                resource_id=subscription.id,
                action="ADMIN_RECOMPUTE_ENTITLEMENTS",
                reason=payload.reason,
                before=before,
                after=dump_state(
                    subscription=subscription,
                    entitlement=_publish_entitlement(db, payload.user_id),
                ),
                metadata={"changed": summary["changed"]},
                idempotency_key=payload.idempotency_key,
            )
            pending.append(
                BillingEvent.for_subscription(
                    BillingEventType.subscription_admin_entitlements_synced,
                    subscription,
                    payload={
                        "expires_at": summary["expires_at"],
                        "changed": summary["changed"],
                    },
                    actor=str(actor.id),
                )
            )
            if not commit_action(db, payload.idempotency_key):
                return duplicate()
        except Exception as exc:
            return failure(
                db,
                exc,
                action="recompute_entitlements",
                actor=actor,
                target=target_of(data, "subscriptionId", "subscription_id", "userId", "user_id"),
            )

        for event in pending:
            events.publish(db, event)
        logger.info(
            "Entitlements recomputed for user %s by %s (changed=%s)",
            summary["user_id"],
            actor.id,
            summary["changed"],
        )
        return ok(summary)


subscription_actions = SubscriptionActions()
