"""Celery tasks for billing event maintenance.

Handles retry of events whose handlers failed after publication.
"""

import logging
from datetime import UTC, datetime, timedelta

from app.celery_app import celery_app
from app.db import SessionLocal

logger = logging.getLogger(__name__)

# Configuration
MAX_RETRIES = 3
MAX_EVENT_AGE_HOURS = 24
BATCH_SIZE = 100


def retry_failed(session, dispatcher, now: datetime | None = None) -> dict:
    """Re-run failed handlers for stored events.

    Events are retried up to MAX_RETRIES times within MAX_EVENT_AGE_HOURS.
    """
    from app.models.event_store import BillingEventRecord, EventStatus

    cutoff = (now or datetime.now(UTC)) - timedelta(hours=MAX_EVENT_AGE_HOURS)
    failed_events = (
        session.query(BillingEventRecord)
        .filter(BillingEventRecord.status == EventStatus.failed)
        .filter(BillingEventRecord.retry_count < MAX_RETRIES)
        .filter(BillingEventRecord.created_at > cutoff)
        .filter(BillingEventRecord.is_active.is_(True))
        .order_by(BillingEventRecord.created_at.asc())
        .limit(BATCH_SIZE)
        .all()
    )

    if not failed_events:
        return {"retried": 0, "succeeded": 0, "failed": 0}

    succeeded = 0
    failed = 0
    for event_record in failed_events:
        try:
            if dispatcher.retry_event(session, event_record):
                succeeded += 1
                logger.info(
                    f"Successfully retried billing event {event_record.event_id} "
                    f"({event_record.event_type})"
                )
            else:
                failed += 1
                logger.warning(
                    f"Billing event {event_record.event_id} failed retry "
                    f"(attempt {event_record.retry_count}/{MAX_RETRIES})"
                )
        except Exception as exc:
            failed += 1
            logger.exception(f"Error retrying billing event {event_record.event_id}: {exc}")
            session.rollback()

    result = {
        "retried": len(failed_events),
        "succeeded": succeeded,
        "failed": failed,
    }
    logger.info(f"Billing event retry task completed: {result}")
    return result


@celery_app.task(name="app.tasks.events.retry_failed_billing_events")
def retry_failed_billing_events():
    from app.services.events import build_dispatcher

    session = SessionLocal()
    try:
        return retry_failed(session, build_dispatcher())
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
