"""Billing event dispatcher.

A dispatcher is built once per process with its handlers registered
explicitly (see ``build_dispatcher``) and handed to the services that
publish events. Events are persisted before dispatching so that failed
handlers can be retried later.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy.orm import Session

from app.models.event_store import BillingEventRecord, EventStatus
from app.schemas.snapshots import SubscriptionSnapshot
from app.services.events.types import BillingEvent, BillingEventType

logger = logging.getLogger(__name__)


class BillingEventHandler(Protocol):
    def handle(self, db: Session, event: BillingEvent) -> None: ...


class BillingEventDispatcher:
    """Routes published billing events to every registered handler.

    A failing handler is logged and recorded on the stored event; the
    remaining handlers still run.
    """

    def __init__(self, handlers: list[BillingEventHandler] | None = None):
        self._handlers: list[BillingEventHandler] = list(handlers or [])

    @property
    def handlers(self) -> list[BillingEventHandler]:
        return list(self._handlers)

    def register_handler(self, handler: BillingEventHandler) -> None:
        """Register an event handler."""
        self._handlers.append(handler)

    def publish(self, db: Session, event: BillingEvent) -> list[dict[str, str]]:
        """Persist and dispatch an event, returning the handlers that failed.

        Never raises: publication happens after the ledger transaction has
        committed and must not undo it.
        """
        try:
            return self._dispatch(db, event)
        except Exception:
            logger.exception(
                "Publishing billing event %s failed (id=%s user=%s)",
                event.event_type.value,
                event.event_id,
                event.user_id,
            )
            db.rollback()
            return [{"handler": "dispatcher", "error": "publish failed"}]

    def _dispatch(self, db: Session, event: BillingEvent) -> list[dict[str, str]]:
        logger.debug(
            f"Dispatching billing event {event.event_type.value} (id={event.event_id})"
        )

        # 1. Persist event before processing
        event_record: BillingEventRecord | None = BillingEventRecord(
            event_id=event.event_id,
            event_type=event.event_type.value,
            payload=event.stored_payload(),
            status=EventStatus.processing,
            actor=event.actor,
            user_id=event.user_id,
            subscription_id=event.subscription_id,
            plan_id=event.plan_id,
            payment_id=event.payment_id,
            invoice_id=event.invoice_id,
        )
        db.add(event_record)
        try:
            db.commit()
        except Exception as persist_exc:
            logger.warning(
                f"Failed to persist billing event {event.event_id}: {persist_exc}"
            )
            db.rollback()
            event_record = None

        # 2. Run every handler, tracking failures
        failed_handlers = self._run_handlers(db, event, only=None)

        # 3. Record the outcome
        if event_record is not None:
            try:
                self._finish(event_record, failed_handlers)
                db.commit()
            except Exception as update_exc:
                logger.warning(
                    f"Failed to update billing event status for {event.event_id}: {update_exc}"
                )
                db.rollback()
        return failed_handlers

    def _run_handlers(
        self, db: Session, event: BillingEvent, only: set[str] | None
    ) -> list[dict[str, str]]:
        failed: list[dict[str, str]] = []
        for handler in self._handlers:
            handler_name = handler.__class__.__name__
            if only and handler_name not in only:
                continue
            try:
                handler.handle(db, event)
            except Exception as exc:
                logger.exception(
                    f"Handler {handler_name} failed for billing event "
                    f"{event.event_type.value}: {exc}"
                )
                failed.append({"handler": handler_name, "error": str(exc)})
        return failed

    @staticmethod
    def _finish(event_record: BillingEventRecord, failed_handlers: list[dict[str, str]]) -> None:
        if failed_handlers:
            event_record.status = EventStatus.failed
            event_record.failed_handlers = failed_handlers
            event_record.error = json.dumps([fh["error"] for fh in failed_handlers])
        else:
            event_record.status = EventStatus.completed
            event_record.failed_handlers = None
            event_record.error = None
        event_record.processed_at = datetime.now(timezone.utc)

    def retry_event(self, db: Session, event_record: BillingEventRecord) -> bool:
        """Re-run the handlers that failed for a stored event.

        Returns:
            True if all retried handlers succeeded, False otherwise
        """
        payload = dict(event_record.payload or {})
        snapshot = payload.pop("subscription", None)
        event = BillingEvent(
            event_type=BillingEventType(event_record.event_type),
            payload=payload,
            event_id=event_record.event_id,
            actor=event_record.actor,
            user_id=event_record.user_id,
            subscription_id=event_record.subscription_id,
            plan_id=event_record.plan_id,
            payment_id=event_record.payment_id,
            invoice_id=event_record.invoice_id,
            subscription=SubscriptionSnapshot.model_validate(snapshot) if snapshot else None,
        )
        if event_record.created_at is not None:
            event.occurred_at = event_record.created_at

        failed_handler_names = {
            fh["handler"] for fh in (event_record.failed_handlers or [])
        }

        event_record.retry_count = (event_record.retry_count or 0) + 1
        event_record.status = EventStatus.processing
        db.commit()

        new_failures = self._run_handlers(db, event, only=failed_handler_names or None)
        self._finish(event_record, new_failures)
        db.commit()
        return not new_failures
