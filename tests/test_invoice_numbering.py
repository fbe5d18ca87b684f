import uuid
from datetime import datetime, timezone

import pytest
from fastapi import HTTPException

from app.models.billing import Invoice, InvoiceStatus, InvoiceType
from app.models.sequence import InvoiceSequence
from app.services import numbering as numbering_service
from app.services.numbering import InvoiceNumberAllocationError

ISSUED = datetime(2025, 1, 14, 9, 30, tzinfo=timezone.utc)


def _invoice(db_session, issued_at=ISSUED, number=None):
    invoice = Invoice(
        user_id=uuid.uuid4(),
        type=InvoiceType.sale,
        status=InvoiceStatus.paid,
        total=1000,
        currency="IRR",
        issued_at=issued_at,
        number=number,
    )
    db_session.add(invoice)
    db_session.commit()
    return invoice


def test_format_number_pads_daily_counter():
    day = ISSUED.date()
    assert numbering_service._format_number("INV", day, 7, 4) == "INV-20250114-0007"
    assert numbering_service._format_number("INV", day, 12345, 4) == "INV-20250114-12345"


def test_assign_invoice_number_uses_issuance_day(db_session):
    invoice = _invoice(db_session)
    number = numbering_service.assign_invoice_number(db_session, invoice.id)
    db_session.commit()
    assert number == "INV-20250114-0001"
    db_session.refresh(invoice)
    assert invoice.number == number


def test_assign_invoice_number_is_idempotent(db_session):
    invoice = _invoice(db_session)
    first = numbering_service.assign_invoice_number(db_session, invoice.id)
    second = numbering_service.assign_invoice_number(db_session, invoice.id)
    assert first == second
    sequence = (
        db_session.query(InvoiceSequence)
        .filter(InvoiceSequence.day == ISSUED.date())
        .one()
    )
    assert sequence.counter == 1


def test_force_reassigns_a_new_number(db_session):
    invoice = _invoice(db_session)
    first = numbering_service.assign_invoice_number(db_session, invoice.id)
    forced = numbering_service.assign_invoice_number(db_session, invoice.id, force=True)
    assert forced != first
    assert forced == "INV-20250114-0002"


def test_numbers_are_distinct_and_monotonic_for_one_day(db_session):
    invoices = [_invoice(db_session) for _ in range(5)]
    numbers = [
        numbering_service.assign_invoice_number(db_session, invoice.id) for invoice in invoices
    ]
    db_session.commit()
    assert len(set(numbers)) == 5
    assert numbers == sorted(numbers)
    assert numbers[-1] == "INV-20250114-0005"


def test_days_have_independent_sequences(db_session):
    first = _invoice(db_session)
    other_day = _invoice(db_session, issued_at=datetime(2025, 1, 15, 0, 5, tzinfo=timezone.utc))
    assert numbering_service.assign_invoice_number(db_session, first.id) == "INV-20250114-0001"
    assert (
        numbering_service.assign_invoice_number(db_session, other_day.id) == "INV-20250115-0001"
    )


def test_collision_with_existing_number_retries(db_session):
    # A number written by another allocator that the counter has not seen yet
    _invoice(db_session, number="INV-20250114-0001")
    invoice = _invoice(db_session)

    number = numbering_service.assign_invoice_number(db_session, invoice.id)
    db_session.commit()

    assert number == "INV-20250114-0002"
    numbers = {row.number for row in db_session.query(Invoice).all()}
    assert "INV-20250114-0001" in numbers
    assert "INV-20250114-0002" in numbers


def test_allocation_gives_up_after_bounded_attempts(db_session, monkeypatch):
    _invoice(db_session, number="INV-20250114-0001")
    invoice = _invoice(db_session)
    calls = []

    def _stuck_counter(db, day):
        calls.append(day)
        return 1

    monkeypatch.setattr(numbering_service, "_next_counter", _stuck_counter)

    with pytest.raises(InvoiceNumberAllocationError):
        numbering_service.assign_invoice_number(db_session, invoice.id)
    assert len(calls) == 6
    db_session.rollback()


def test_assign_invoice_number_unknown_invoice(db_session):
    with pytest.raises(HTTPException) as exc:
        numbering_service.assign_invoice_number(db_session, uuid.uuid4())
    assert exc.value.status_code == 404


def test_resync_invoice_number_commits_new_number(db_session):
    invoice = _invoice(db_session)
    original = numbering_service.assign_invoice_number(db_session, invoice.id)
    db_session.commit()

    resynced = numbering_service.resync_invoice_number(db_session, invoice.id)

    db_session.refresh(invoice)
    assert resynced != original
    assert invoice.number == resynced
    assert resynced.startswith("INV-20250114-")


def test_two_connections_share_one_daily_sequence(file_sessionmaker):
    first_db = file_sessionmaker()
    second_db = file_sessionmaker()
    first_invoices = [_invoice(first_db) for _ in range(2)]
    second_invoices = [_invoice(second_db) for _ in range(2)]

    numbers = []
    for first, second in zip(first_invoices, second_invoices):
        numbers.append(numbering_service.assign_invoice_number(first_db, first.id))
        first_db.commit()
        numbers.append(numbering_service.assign_invoice_number(second_db, second.id))
        second_db.commit()

    assert numbers == [
        "INV-20250114-0001",
        "INV-20250114-0002",
        "INV-20250114-0003",
        "INV-20250114-0004",
    ]
    check = file_sessionmaker()
    sequence = check.query(InvoiceSequence).filter(InvoiceSequence.day == ISSUED.date()).one()
    assert sequence.counter == 4
    assert check.query(Invoice).filter(Invoice.number.is_not(None)).count() == 4
    for session in (first_db, second_db, check):
        session.close()
