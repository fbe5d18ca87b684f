"""Administrative payment workflows: refunds and manual failure marking."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.models.billing import Invoice, InvoiceStatus, InvoiceType, Payment, PaymentStatus
from app.schemas.admin_billing import (
    AdminActionResult,
    AdminActor,
    MarkPaymentFailedInput,
    RefundPaymentInput,
    RefundPolicy,
)
from app.schemas.snapshots import dump_state
from app.services import audit as audit_service
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
from app.services.common import utc_now
from app.services.events.types import BillingEvent, BillingEventType
from app.services.numbering import assign_invoice_number

logger = logging.getLogger(__name__)

REFUNDABLE_STATUSES = (PaymentStatus.paid, PaymentStatus.refunded_partial)


def refundable_amount(payment: Payment) -> int:
    return max(payment.amount - (payment.refunded_amount or 0), 0)


class PaymentActions:
    @staticmethod
    def refund(db: Session, events, actor: AdminActor | None, data: dict[str, Any]) -> AdminActionResult:
        """Refund part or all of a payment.

        Always issues a separately numbered REFUND invoice for the refunded
        amount. A refund that reaches the full amount marks the payment and
        its sale invoice REFUNDED; a partial one marks the payment
        REFUNDED_PARTIAL and notes the refund on the sale invoice.
        """
        try:
            require_admin(actor)
            payload = RefundPaymentInput.model_validate(data)
            if already_processed(db, payload.idempotency_key):
                return duplicate()

            payment = lock_for_update(db, Payment, payload.id, "Payment not found")
            assert_fresh(payment.updated_at, payload.updated_at)
            sale_invoice = payment.invoice
            before = dump_state(payment=payment, invoice=sale_invoice)
            if payment.status not in REFUNDABLE_STATUSES:
                raise reject(
                    db,
                    actor=actor,
                    resource_type="payment",
                    resource_id=payment.id,
                    action="ADMIN_REFUND_PAYMENT",
                    reason=payload.reason,
                    message=f"A {payment.status.value} payment cannot be refunded",
                    before=before,
                    metadata={"amount": payload.amount},
                )
            remaining = refundable_amount(payment)
            if payload.amount > remaining:
                raise HTTPException(
                    status_code=400,
                    detail=f"Refund amount exceeds the refundable balance of {remaining}",
                )

            now = utc_now()
            payment.refunded_amount = (payment.refunded_amount or 0) + payload.amount
            full_refund = payment.refunded_amount >= payment.amount
            payment.status = PaymentStatus.refunded if full_refund else PaymentStatus.refunded_partial

            if sale_invoice is not None:
                if full_refund:
                    sale_invoice.status = InvoiceStatus.refunded
                else:
                    note = (
                        f"Partial refund of {payload.amount} {payment.currency} "
                        f"on {now:%Y-%m-%d}: {payload.reason}"
                    )
                    sale_invoice.notes = f"{sale_invoice.notes}\n{note}" if sale_invoice.notes else note

            refund_invoice = Invoice(
                user_id=payment.user_id,
                related_invoice_id=sale_invoice.id if sale_invoice else None,
                type=InvoiceType.refund,
                status=InvoiceStatus.paid,
                total=-payload.amount,
                currency=payment.currency,
                provider_ref=payment.provider_ref,
                issued_at=now,
                notes=payload.reason,
            )
            db.add(refund_invoice)
            db.flush()
            refund_number = assign_invoice_number(db, refund_invoice.id, issued_at=now)

            pending: list[BillingEvent] = []
            if payload.policy is RefundPolicy.revoke_now:
                entitlement_service.revoke_publish_access(db, payment.user_id, now)
                subscription = subscription_service.get_for_user(db, payment.user_id)
                if (
                    full_refund
                    and subscription is not None
                    and subscription.status in subscription_service.SERVING_STATUSES
                ):
                    _, event = subscription_service.stage_mark_expired(db, subscription)
                    if event is not None:
                        pending.append(event)
                        logger.info(
                            "Subscription %s expired by full refund of payment %s",
                            subscription.id,
                            payment.id,
                        )

            remaining_after = refundable_amount(payment)
            audit_service.record_audit(
                db,
                actor=actor,
                resource_type="payment",
                resource_id=payment.id,
                action="ADMIN_REFUND_PAYMENT",
                reason=payload.reason,
                before=before,
                after=dump_state(payment=payment, invoice=sale_invoice, refund_invoice=refund_invoice),
                metadata={
                    "amount": payload.amount,
                    "policy": payload.policy.value,
                    "full_refund": full_refund,
                    "remaining_refundable": remaining_after,
                    "refund_invoice_number": refund_number,
                },
                idempotency_key=payload.idempotency_key,
            )
            payment_id = payment.id
            user_id = payment.user_id
            refund_invoice_id = refund_invoice.id
            currency = payment.currency
            if not commit_action(db, payload.idempotency_key):
                return duplicate()
        except Exception as exc:
            return failure(db, exc, action="refund_payment", actor=actor, target=target_of(data, "id"))

        pending.append(
            BillingEvent(
                event_type=BillingEventType.payment_admin_refunded,
                payload={
                    "amount": payload.amount,
                    "currency": currency,
                    "policy": payload.policy.value,
                    "full_refund": full_refund,
                    "refund_invoice_number": refund_number,
                },
                actor=str(actor.id),
                user_id=user_id,
                payment_id=payment_id,
                invoice_id=refund_invoice_id,
            )
        )
        for event in pending:
            events.publish(db, event)
        return ok(
            {
                "payment_id": str(payment_id),
                "refund_invoice_id": str(refund_invoice_id),
                "refund_invoice_number": refund_number,
                "remaining_refundable": remaining_after,
                "full_refund": full_refund,
            }
        )

    @staticmethod
    def mark_failed(db: Session, events, actor: AdminActor | None, data: dict[str, Any]) -> AdminActionResult:
        """Mark a pending payment FAILED and void its invoice, if any."""
        try:
            require_admin(actor)
            payload = MarkPaymentFailedInput.model_validate(data)
            if already_processed(db, payload.idempotency_key):
                return duplicate()

            payment = lock_for_update(db, Payment, payload.id, "Payment not found")
            assert_fresh(payment.updated_at, payload.updated_at)
            invoice = payment.invoice
            before = dump_state(payment=payment, invoice=invoice)
            if payment.status != PaymentStatus.pending:
                raise reject(
                    db,
                    actor=actor,
                    resource_type="payment",
                    resource_id=payment.id,
                    action="ADMIN_MARK_PAYMENT_FAILED",
                    reason=payload.reason,
                    message="Only pending payments can be marked as failed",
                    before=before,
                )
            payment.status = PaymentStatus.failed
            if invoice is not None and invoice.status != InvoiceStatus.void:
                invoice.status = InvoiceStatus.void
            db.flush()
            audit_service.record_audit(
                db,
                actor=actor,
                resource_type="payment",
                resource_id=payment.id,
                action="ADMIN_MARK_PAYMENT_FAILED",
                reason=payload.reason,
                before=before,
                after=dump_state(payment=payment, invoice=invoice),
                idempotency_key=payload.idempotency_key,
            )
            event = BillingEvent(
                event_type=BillingEventType.payment_admin_marked_failed,
                payload={
                    "amount": payment.amount,
                    "currency": payment.currency,
                    "provider": payment.provider,
                    "provider_ref": payment.provider_ref,
                },
                actor=str(actor.id),
                user_id=payment.user_id,
                payment_id=payment.id,
                invoice_id=invoice.id if invoice else None,
            )
            if not commit_action(db, payload.idempotency_key):
                return duplicate()
        except Exception as exc:
            return failure(db, exc, action="mark_payment_failed", actor=actor, target=target_of(data, "id"))

        events.publish(db, event)
        return ok({"payment_id": str(event.payment_id)})


payment_actions = PaymentActions()
