from typing import Any
from uuid import UUID

from fastapi import APIRouter, Body, Depends, status
from sqlalchemy.orm import Session

from app.api.deps import get_actor, get_billing_events, get_db
from app.schemas.admin_billing import AdminActionResult, AdminActor
from app.schemas.webhooks import InvalidWebhookRecord, WebhookEventIngest, WebhookIngestResult
from app.services import billing as billing_service
from app.services import entitlements as entitlement_service
from app.services.events import BillingEventDispatcher

router = APIRouter(prefix="/billing")
admin_router = APIRouter(prefix="/admin/billing")


def _with_id(data: dict[str, Any], record_id: str) -> dict[str, Any]:
    return {**data, "id": record_id}


# --- Webhooks ---


@router.post(
    "/webhooks/events",
    response_model=WebhookIngestResult,
    tags=["billing-webhooks"],
)
def ingest_webhook_event(
    payload: WebhookEventIngest,
    db: Session = Depends(get_db),
    events: BillingEventDispatcher = Depends(get_billing_events),
):
    return billing_service.process_webhook(db, events, payload)


@router.post(
    "/webhooks/invalid",
    status_code=status.HTTP_202_ACCEPTED,
    tags=["billing-webhooks"],
)
def record_invalid_webhook(payload: InvalidWebhookRecord, db: Session = Depends(get_db)) -> dict:
    log = billing_service.record_invalid_webhook(db, payload)
    return {"webhook_log_id": str(log.id), "status": log.status.value}


# --- Entitlements ---


@router.get("/users/{user_id}/entitlements", tags=["billing-entitlements"])
def get_user_entitlements(user_id: UUID, db: Session = Depends(get_db)) -> dict:
    return entitlement_service.entitlement_summary(db, user_id)


@router.post("/users/{user_id}/job-credits/consume", tags=["billing-entitlements"])
def consume_job_credit(user_id: UUID, db: Session = Depends(get_db)) -> dict:
    remaining = entitlement_service.spend_job_credit(db, user_id)
    return {"user_id": str(user_id), "remaining_credits": remaining}


# --- Admin: payments ---


@admin_router.post(
    "/payments/{payment_id}/refund",
    response_model=AdminActionResult,
    tags=["billing-admin"],
)
def refund_payment(
    payment_id: str,
    data: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    events: BillingEventDispatcher = Depends(get_billing_events),
    actor: AdminActor | None = Depends(get_actor),
):
    return billing_service.payment_actions.refund(db, events, actor, _with_id(data, payment_id))


@admin_router.post(
    "/payments/{payment_id}/mark-failed",
    response_model=AdminActionResult,
    tags=["billing-admin"],
)
def mark_payment_failed(
    payment_id: str,
    data: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    events: BillingEventDispatcher = Depends(get_billing_events),
    actor: AdminActor | None = Depends(get_actor),
):
    return billing_service.payment_actions.mark_failed(db, events, actor, _with_id(data, payment_id))


# --- Admin: subscriptions ---


@admin_router.post(
    "/subscriptions/{subscription_id}/cancel-now",
    response_model=AdminActionResult,
    tags=["billing-admin"],
)
def cancel_subscription_now(
    subscription_id: str,
    data: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    events: BillingEventDispatcher = Depends(get_billing_events),
    actor: AdminActor | None = Depends(get_actor),
):
    return billing_service.subscription_actions.cancel_now(
        db, events, actor, _with_id(data, subscription_id)
    )


@admin_router.post(
    "/subscriptions/{subscription_id}/cancel-at-period-end",
    response_model=AdminActionResult,
    tags=["billing-admin"],
)
def set_cancel_at_period_end(
    subscription_id: str,
    data: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    events: BillingEventDispatcher = Depends(get_billing_events),
    actor: AdminActor | None = Depends(get_actor),
):
    return billing_service.subscription_actions.set_cancel_at_period_end(
        db, events, actor, _with_id(data, subscription_id)
    )


@admin_router.post(
    "/subscriptions/{subscription_id}/adjust-ends-at",
    response_model=AdminActionResult,
    tags=["billing-admin"],
)
def adjust_subscription_ends_at(
    subscription_id: str,
    data: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    events: BillingEventDispatcher = Depends(get_billing_events),
    actor: AdminActor | None = Depends(get_actor),
):
    return billing_service.subscription_actions.adjust_ends_at(
        db, events, actor, _with_id(data, subscription_id)
    )


@admin_router.post(
    "/entitlements/recompute",
    response_model=AdminActionResult,
    tags=["billing-admin"],
)
def recompute_entitlements(
    data: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    events: BillingEventDispatcher = Depends(get_billing_events),
    actor: AdminActor | None = Depends(get_actor),
):
    return billing_service.subscription_actions.recompute_entitlements(db, events, actor, data)


# --- Admin: invoices ---


@admin_router.post(
    "/invoices/{invoice_id}/void",
    response_model=AdminActionResult,
    tags=["billing-admin"],
)
def void_invoice(
    invoice_id: str,
    data: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    events: BillingEventDispatcher = Depends(get_billing_events),
    actor: AdminActor | None = Depends(get_actor),
):
    return billing_service.invoice_actions.void(db, events, actor, _with_id(data, invoice_id))


@admin_router.post(
    "/invoices/{invoice_id}/resync-number",
    response_model=AdminActionResult,
    tags=["billing-admin"],
)
def resync_invoice_number(
    invoice_id: str,
    data: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    events: BillingEventDispatcher = Depends(get_billing_events),
    actor: AdminActor | None = Depends(get_actor),
):
    return billing_service.invoice_actions.resync_number(db, events, actor, _with_id(data, invoice_id))
