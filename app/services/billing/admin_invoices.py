"""Administrative invoice workflows: voiding and number resync."""

from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from app.models.billing import Invoice, InvoiceStatus
from app.schemas.admin_billing import (
    AdminActionResult,
    AdminActor,
    ResyncInvoiceNumberInput,
    VoidInvoiceInput,
)
from app.schemas.snapshots import dump_state
from app.services import audit as audit_service
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
from app.services.events.types import BillingEvent, BillingEventType
from app.services.numbering import assign_invoice_number


def _invoice_event(event_type: BillingEventType, invoice: Invoice, actor: AdminActor, **payload) -> BillingEvent:
    return BillingEvent(
        event_type=event_type,
        payload={"invoice_number": invoice.number, **payload},
        actor=str(actor.id),
        user_id=invoice.user_id,
        payment_id=invoice.payment_id,
        invoice_id=invoice.id,
    )


class InvoiceActions:
    @staticmethod
    def void(db: Session, events, actor: AdminActor | None, data: dict[str, Any]) -> AdminActionResult:
        try:
            require_admin(actor)
            payload = VoidInvoiceInput.model_validate(data)
            if already_processed(db, payload.idempotency_key):
                return duplicate()

            invoice = lock_for_update(db, Invoice, payload.id, "Invoice not found")
            assert_fresh(invoice.updated_at, payload.updated_at)
            before = dump_state(invoice=invoice)
            if invoice.status != InvoiceStatus.paid:
                raise reject(
                    db,
                    actor=actor,
                    resource_type="invoice",
                    resource_id=invoice.id,
                    action="ADMIN_VOID_INVOICE",
                    reason=payload.reason,
                    message=f"A {invoice.status.value} invoice cannot be voided",
                    before=before,
                )
            invoice.status = InvoiceStatus.void
            db.flush()
            audit_service.record_audit(
                db,
                actor=actor,
                resource_type="invoice",
                resource_id=invoice.id,
                action="ADMIN_VOID_INVOICE",
                reason=payload.reason,
                before=before,
                after=dump_state(invoice=invoice),
                idempotency_key=payload.idempotency_key,
            )
            event = _invoice_event(
                BillingEventType.invoice_admin_voided, invoice, actor, reason=payload.reason
            )
            result = {"invoice_id": str(invoice.id), "status": invoice.status.value}
            if not commit_action(db, payload.idempotency_key):
                return duplicate()
        except Exception as exc:
            return failure(db, exc, action="void_invoice", actor=actor, target=target_of(data, "id"))

        events.publish(db, event)
        return ok(result)

    @staticmethod
    def resync_number(db: Session, events, actor: AdminActor | None, data: dict[str, Any]) -> AdminActionResult:
        """Allocate a fresh number from the invoice's issuance-day sequence."""
        try:
            require_admin(actor)
            payload = ResyncInvoiceNumberInput.model_validate(data)
            if already_processed(db, payload.idempotency_key):
                return duplicate()

            invoice = lock_for_update(db, Invoice, payload.id, "Invoice not found")
            assert_fresh(invoice.updated_at, payload.updated_at)
            before = dump_state(invoice=invoice)
            previous_number = invoice.number
            number = assign_invoice_number(db, invoice.id, force=True)
            audit_service.record_audit(
                db,
                actor=actor,
                resource_type="invoice",
                resource_id=invoice.id,
                action="ADMIN_RESYNC_INVOICE_NUMBER",
                reason=payload.reason,
                before=before,
                after=dump_state(invoice=invoice),
                metadata={"previous_number": previous_number, "number": number},
                idempotency_key=payload.idempotency_key,
            )
            event = _invoice_event(
                BillingEventType.invoice_admin_resynced,
                invoice,
                actor,
                previous_number=previous_number,
            )
            if not commit_action(db, payload.idempotency_key):
                return duplicate()
        except Exception as exc:
            return failure(db, exc, action="resync_invoice_number", actor=actor, target=target_of(data, "id"))

        events.publish(db, event)
        return ok({"invoice_id": str(event.invoice_id), "number": number, "previous_number": previous_number})


invoice_actions = InvoiceActions()
