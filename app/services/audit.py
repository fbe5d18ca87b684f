"""Audit trail helpers for administrative and engine mutations."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from app.models.audit import AuditLog
from app.schemas.admin_billing import AdminActor

logger = logging.getLogger(__name__)


def find_by_idempotency_key(db: Session, idempotency_key: str | None) -> AuditLog | None:
    if not idempotency_key:
        return None
    return (
        db.query(AuditLog)
        .filter(AuditLog.idempotency_key == idempotency_key)
        .first()
    )


def record_audit(
    db: Session,
    *,
    actor: AdminActor | None,
    resource_type: str,
    resource_id,
    action: str,
    reason: str | None = None,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
    idempotency_key: str | None = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction.

    ``actor`` is None for system-initiated mutations.
    """
    entry = AuditLog(
        actor_id=actor.id if actor else None,
        actor_email=actor.email if actor else None,
        resource_type=resource_type,
        resource_id=str(resource_id),
        action=action,
        reason=reason,
        before=before,
        after=after,
        metadata_=metadata,
        idempotency_key=idempotency_key,
    )
    db.add(entry)
    return entry


def record_rejection(
    db: Session,
    *,
    actor: AdminActor | None,
    resource_type: str,
    resource_id,
    action: str,
    reason: str | None,
    error: str,
    before: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Commit an audit row for a refused transition in its own transaction."""
    db.rollback()
    record_audit(
        db,
        actor=actor,
        resource_type=resource_type,
        resource_id=resource_id,
        action=action,
        reason=reason,
        before=before,
        metadata={**(metadata or {}), "error": error},
    )
    try:
        db.commit()
    except Exception:
        logger.exception(
            "Could not record rejected %s on %s %s", action, resource_type, resource_id
        )
        db.rollback()
