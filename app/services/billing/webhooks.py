"""Provider webhook ingestion.

Each verified provider event is first recorded in ``webhook_logs``; the
``(provider, external_id)`` constraint answers "seen before?" before any
ledger row is touched. The ledger writes (payment upsert, sale invoice,
invoice number) then commit together, and entitlement and notification work
runs afterwards on a best-effort basis.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.billing import Invoice, InvoiceStatus, InvoiceType, Payment, PaymentStatus
from app.models.webhook import WebhookLog, WebhookLogStatus
from app.schemas.webhooks import (
    WEBHOOK_STATUS_TO_PAYMENT,
    InvalidWebhookRecord,
    WebhookEventIngest,
    WebhookIngestResult,
)
from app.services import entitlements as entitlement_service
from app.services.events.types import BillingEvent, BillingEventType
from app.services.numbering import assign_invoice_number

logger = logging.getLogger(__name__)

# Payment status only moves forward, so late or reordered deliveries for the
# same provider reference converge on the same end state.
_STATUS_RANK = {
    PaymentStatus.pending: 0,
    PaymentStatus.failed: 1,
    PaymentStatus.paid: 2,
    PaymentStatus.refunded_partial: 3,
    PaymentStatus.refunded: 4,
}


def _find_log(db: Session, provider: str, external_id: str) -> WebhookLog | None:
    return (
        db.query(WebhookLog)
        .filter(WebhookLog.provider == provider)
        .filter(WebhookLog.external_id == external_id)
        .first()
    )


def _claim_log(db: Session, payload: WebhookEventIngest) -> tuple[WebhookLog, bool]:
    """Insert the log row; returns (log, is_new)."""
    log = WebhookLog(
        provider=payload.provider,
        external_id=payload.external_id,
        event_type=payload.event_type,
        signature=payload.signature,
        payload=payload.raw_payload.model_dump(mode="json"),
        status=WebhookLogStatus.received,
    )
    db.add(log)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _find_log(db, payload.provider, payload.external_id)
        if existing is None:
            raise
        return existing, False
    return log, True


def _find_payment(db: Session, provider: str, provider_ref: str) -> Payment | None:
    return (
        db.query(Payment)
        .filter(Payment.provider == provider)
        .filter(Payment.provider_ref == provider_ref)
        .first()
    )


def _upsert_payment(db: Session, payload: WebhookEventIngest) -> Payment:
    status = WEBHOOK_STATUS_TO_PAYMENT[payload.status]
    payment = _find_payment(db, payload.provider, payload.provider_ref)
    if payment is None:
        payment = Payment(
            user_id=payload.user_id,
            checkout_session_id=payload.checkout_session_id,
            provider=payload.provider,
            provider_ref=payload.provider_ref,
            status=status,
            amount=payload.amount,
            currency=payload.currency,
            refunded_amount=0,
        )
        try:
            with db.begin_nested():
                db.add(payment)
                db.flush()
            return payment
        except IntegrityError:
            payment = _find_payment(db, payload.provider, payload.provider_ref)
            if payment is None:
                raise

    if _STATUS_RANK[status] > _STATUS_RANK[payment.status]:
        payment.status = status
    if payment.checkout_session_id is None and payload.checkout_session_id is not None:
        payment.checkout_session_id = payload.checkout_session_id
    db.flush()
    return payment


def _ensure_sale_invoice(db: Session, payment: Payment) -> tuple[Invoice, bool]:
    existing = db.query(Invoice).filter(Invoice.payment_id == payment.id).first()
    if existing is not None:
        return existing, False
    invoice = Invoice(
        user_id=payment.user_id,
        payment_id=payment.id,
        type=InvoiceType.sale,
        status=InvoiceStatus.paid,
        total=payment.amount,
        currency=payment.currency,
        provider_ref=payment.provider_ref,
        issued_at=datetime.now(timezone.utc),
    )
    try:
        with db.begin_nested():
            db.add(invoice)
            db.flush()
    except IntegrityError:
        existing = db.query(Invoice).filter(Invoice.payment_id == payment.id).first()
        if existing is None:
            raise
        return existing, False
    return invoice, True


def _mark_log_failed(db: Session, log_id, error: str) -> None:
    try:
        log = db.get(WebhookLog, log_id)
        if log is not None:
            log.status = WebhookLogStatus.failed
            log.error = error[:2000]
            db.commit()
    except Exception:
        logger.exception("Could not mark webhook log %s as failed", log_id)
        db.rollback()


def process_webhook(db: Session, events, payload: WebhookEventIngest) -> WebhookIngestResult:
    """Apply one verified provider event.

    A delivery whose ``(provider, external_id)`` was already handled (or is
    being handled) returns ``idempotent=True`` without touching the ledger. A
    delivery whose earlier attempt failed is processed again on the same log row.
    """
    log, is_new = _claim_log(db, payload)
    if not is_new and log.status != WebhookLogStatus.failed:
        logger.info(
            "Duplicate webhook %s/%s ignored (log=%s status=%s)",
            payload.provider,
            payload.external_id,
            log.id,
            log.status.value,
        )
        payment = db.get(Payment, log.payment_id) if log.payment_id else None
        return WebhookIngestResult(
            idempotent=True,
            webhook_log_id=log.id,
            payment_id=log.payment_id,
            payment_status=payment.status if payment else None,
            invoice_id=payment.invoice.id if payment and payment.invoice else None,
            invoice_number=payment.invoice.number if payment and payment.invoice else None,
        )

    log_id = log.id
    try:
        payment = _upsert_payment(db, payload)
        invoice = None
        invoice_created = False
        if payment.status == PaymentStatus.paid:
            invoice, invoice_created = _ensure_sale_invoice(db, payment)
            assign_invoice_number(db, invoice.id, issued_at=invoice.issued_at)
        log.status = WebhookLogStatus.handled
        log.error = None
        log.payment_id = payment.id
        log.handled_at = datetime.now(timezone.utc)
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.exception(
            "Webhook %s/%s failed (provider_ref=%s)",
            payload.provider,
            payload.external_id,
            payload.provider_ref,
        )
        _mark_log_failed(db, log_id, str(exc))
        raise

    payment_id = payment.id
    payment_status = payment.status
    user_id = payment.user_id
    invoice_id = invoice.id if invoice else None
    invoice_number = invoice.number if invoice else None

    entitlement_outcome = None
    if payment_status == PaymentStatus.paid:
        try:
            result = entitlement_service.apply_payment(
                db, events, payment_id, invoice_id=invoice_id
            )
            entitlement_outcome = result.outcome.value
            if not result.ok:
                logger.warning(
                    "Entitlements not applied for payment %s: %s",
                    payment_id,
                    result.message,
                )
        except Exception:
            db.rollback()
            logger.exception("Applying entitlements failed for payment %s", payment_id)

    if payment_status == PaymentStatus.failed:
        events.publish(
            db,
            BillingEvent(
                event_type=BillingEventType.payment_failed,
                payload={
                    "amount": payload.amount,
                    "currency": payload.currency,
                    "provider": payload.provider,
                    "provider_ref": payload.provider_ref,
                },
                user_id=user_id,
                payment_id=payment_id,
            ),
        )
    if invoice_created:
        events.publish(
            db,
            BillingEvent(
                event_type=BillingEventType.invoice_ready,
                payload={
                    "invoice_number": invoice_number,
                    "amount": payload.amount,
                    "currency": payload.currency,
                },
                user_id=user_id,
                payment_id=payment_id,
                invoice_id=invoice_id,
            ),
        )

    return WebhookIngestResult(
        idempotent=False,
        webhook_log_id=log_id,
        payment_id=payment_id,
        payment_status=payment_status,
        invoice_id=invoice_id,
        invoice_number=invoice_number,
        invoice_created=invoice_created,
        entitlement=entitlement_outcome,
    )


def record_invalid_webhook(db: Session, record: InvalidWebhookRecord) -> WebhookLog:
    """Keep a delivery that failed verification, without touching the ledger."""
    log = WebhookLog(
        provider=record.provider,
        external_id=record.external_id,
        event_type=record.event_type,
        signature=record.signature,
        payload=record.raw_payload,
        status=WebhookLogStatus.invalid,
        error=record.error,
    )
    db.add(log)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _find_log(db, record.provider, record.external_id)
        if existing is None:
            raise
        return existing
    db.refresh(log)
    logger.warning(
        "Invalid webhook recorded for %s/%s: %s",
        record.provider,
        record.external_id,
        record.error,
    )
    return log
