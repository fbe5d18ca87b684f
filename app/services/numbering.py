"""Invoice number allocation.

Numbers look like ``INV-20250114-0007``: prefix, UTC issuance day and a
zero-padded per-day counter taken from ``invoice_sequences``.
"""

import logging
from datetime import date, datetime

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.billing import Invoice
from app.models.sequence import InvoiceSequence
from app.services.common import as_utc, get_or_404, utc_now

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


class InvoiceNumberAllocationError(RuntimeError):
    """Raised when every allocation attempt collided with an existing number."""


def _format_number(prefix: str | None, day: date, value: int, padding: int | None) -> str:
    pad = max(int(padding or 0), 0)
    prefix_value = prefix or ""
    return f"{prefix_value}-{day:%Y%m%d}-{value:0{pad}d}"


def _next_counter(db: Session, day: date) -> int:
    """Increment the counter for ``day`` and return the new value."""
    insert_fn = _UPSERT_DIALECTS.get(db.get_bind().dialect.name)
    if insert_fn is not None:
        stmt = (
            insert_fn(InvoiceSequence)
            .values(day=day, counter=1)
            .on_conflict_do_update(
                index_elements=[InvoiceSequence.day],
                set_={
                    "counter": InvoiceSequence.counter + 1,
                    "updated_at": utc_now(),
                },
            )
            .returning(InvoiceSequence.counter)
        )
        return db.execute(stmt).scalar_one()

    sequence = (
        db.query(InvoiceSequence)
        .filter(InvoiceSequence.day == day)
        .with_for_update()
        .first()
    )
    if not sequence:
        sequence = InvoiceSequence(day=day, counter=0)
        db.add(sequence)
        db.flush()
    sequence.counter = sequence.counter + 1
    db.flush()
    return sequence.counter


def assign_invoice_number(
    db: Session,
    invoice_id,
    issued_at: datetime | None = None,
    force: bool = False,
) -> str:
    """Give an invoice its number, reusing the existing one unless ``force`` is set.

    Runs inside the caller's transaction; the caller commits. Each attempt
    takes a fresh counter value, so a collision with a number written by a
    concurrent allocator is resolved by moving on to the next value.

    Raises:
        HTTPException: 404 if the invoice does not exist
        InvoiceNumberAllocationError: when all attempts collide
    """
    db.flush()
    invoice = get_or_404(db, Invoice, invoice_id, detail="Invoice not found")
    if invoice.number and not force:
        return invoice.number

    issued = as_utc(issued_at or invoice.issued_at or utc_now())
    day = issued.date()
    max_attempts = max(settings.invoice_number_max_attempts, 1)
    last_candidate = None
    for attempt in range(1, max_attempts + 1):
        counter = _next_counter(db, day)
        candidate = _format_number(
            settings.invoice_number_prefix, day, counter, settings.invoice_number_padding
        )
        last_candidate = candidate
        try:
            with db.begin_nested():
                invoice.number = candidate
                db.flush()
        except IntegrityError:
            logger.warning(
                "Invoice number %s already taken (invoice=%s attempt=%s/%s)",
                candidate,
                invoice.id,
                attempt,
                max_attempts,
            )
            continue
        return candidate

    logger.critical(
        "Invoice number allocation exhausted for invoice %s on %s (last candidate %s)",
        invoice_id,
        day.isoformat(),
        last_candidate,
    )
    raise InvoiceNumberAllocationError(
        f"Could not allocate an invoice number after {max_attempts} attempts"
    )


def resync_invoice_number(db: Session, invoice_id) -> str:
    """Re-issue an invoice's number from its issuance day's sequence and commit."""
    try:
        number = assign_invoice_number(db, invoice_id, force=True)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return number
