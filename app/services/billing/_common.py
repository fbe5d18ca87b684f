"""Shared plumbing for the administrative billing workflows.

Every workflow returns an ``AdminActionResult`` and never raises:
- ``HTTPException`` details are shown to the operator as-is
- pydantic validation errors show the first failing field
- a write that lost a concurrent update shows the stale-data message
- anything else is logged and reported with a generic retry message
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import HTTPException
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.schemas.admin_billing import AdminActionResult, AdminActor
from app.services import audit as audit_service
from app.services.common import as_utc, get_or_404

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Something went wrong while processing the request. Please try again."
STALE_DATA_ERROR = "This record was changed by someone else. Reload the page and try again."


def require_admin(actor: AdminActor | None) -> AdminActor:
    if actor is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    if settings.billing_admin_role not in actor.roles:
        raise HTTPException(status_code=403, detail="Administrator access required")
    return actor


def assert_fresh(current: datetime | None, expected: datetime) -> None:
    """Optimistic concurrency check on ``updated_at``.

    Only compares the snapshot the operator saw. Rows must be loaded with
    ``lock_for_update`` so a commit landing after this check still fails the
    write through the mapper version counter.
    """
    if current is None or as_utc(current) != as_utc(expected):
        raise HTTPException(status_code=409, detail=STALE_DATA_ERROR)


def ok(data: dict[str, Any] | None = None) -> AdminActionResult:
    return AdminActionResult(ok=True, data=data)


def duplicate() -> AdminActionResult:
    return AdminActionResult(ok=True, idempotent=True)


def already_processed(db: Session, idempotency_key: str | None) -> bool:
    return audit_service.find_by_idempotency_key(db, idempotency_key) is not None


def reject(
    db: Session,
    *,
    actor: AdminActor,
    resource_type: str,
    resource_id,
    action: str,
    reason: str | None,
    message: str,
    before: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
) -> HTTPException:
    """Audit a refused transition and return the 409 to raise."""
    audit_service.record_rejection(
        db,
        actor=actor,
        resource_type=resource_type,
        resource_id=resource_id,
        action=f"{action}_REJECTED",
        reason=reason,
        error=message,
        before=before,
        metadata=metadata,
    )
    return HTTPException(status_code=409, detail=message)


def commit_action(db: Session, idempotency_key: str | None) -> bool:
    """Commit the mutation and its audit row.

    Returns False when a concurrent submission with the same idempotency key
    committed first; the mutation is rolled back in that case.
    """
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        if idempotency_key and already_processed(db, idempotency_key):
            return False
        raise
    return True


def validation_message(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid input"
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "__root__")
    message = first.get("msg", "Invalid value")
    return f"{field}: {message}" if field else message


def failure(
    db: Session,
    exc: Exception,
    *,
    action: str,
    actor: AdminActor | None,
    target: Any = None,
) -> AdminActionResult:
    db.rollback()
    if isinstance(exc, ValidationError):
        return AdminActionResult(ok=False, error=validation_message(exc))
    if isinstance(exc, HTTPException):
        detail = exc.detail if isinstance(exc.detail, str) else GENERIC_ERROR
        return AdminActionResult(ok=False, error=detail)
    if isinstance(exc, StaleDataError):
        logger.info("Admin action %s lost a concurrent update (target=%s)", action, target)
        return AdminActionResult(ok=False, error=STALE_DATA_ERROR)
    logger.exception(
        "Admin action %s failed (target=%s actor=%s)",
        action,
        target,
        actor.id if actor else None,
    )
    return AdminActionResult(ok=False, error=GENERIC_ERROR)


def target_of(data: Any, *keys: str) -> Any:
    if not isinstance(data, dict):
        return None
    for key in keys:
        if data.get(key):
            return data[key]
    return None


def lock_for_update(db: Session, model, id, detail: str):
    """Load ``model`` by id holding a row lock until the action commits."""
    return get_or_404(db, model, id, detail=detail, with_for_update=True, populate_existing=True)
