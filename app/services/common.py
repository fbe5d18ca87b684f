"""Common helper functions for the billing service layer.

This module provides reusable utilities for:
- UUID handling
- Entity retrieval with 404 handling
- UTC timestamp normalization
- Calendar-month arithmetic for billing cycles
"""

from __future__ import annotations

import uuid
from calendar import monthrange
from datetime import datetime, timezone
from typing import TYPE_CHECKING, TypeVar

from fastapi import HTTPException

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

T = TypeVar("T")


def coerce_uuid(value):
    """Convert value to UUID, returning None if value is None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def get_or_404(db: Session, model: type[T], id, detail: str | None = None, **options) -> T:
    """Get entity by ID or raise 404.

    Args:
        db: Database session
        model: SQLAlchemy model class
        id: Entity ID (string or UUID)
        detail: Custom error message (defaults to "{ModelName} not found")
        **options: Additional options passed to db.get() (e.g., with_for_update=True)

    Returns:
        Entity instance

    Raises:
        HTTPException: 404 if entity not found or the id is malformed
    """
    try:
        key = coerce_uuid(id)
    except ValueError:
        key = None
    entity = db.get(model, key, **options) if key is not None else None
    if not entity:
        raise HTTPException(
            status_code=404,
            detail=detail or f"{model.__name__} not found",
        )
    return entity


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime.

    Naive values are read back as UTC, which is how every timestamp column
    is written.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    total = value.month - 1 + months
    year = value.year + total // 12
    month = total % 12 + 1
    day = min(value.day, monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def later_of(*values: datetime | None) -> datetime:
    """Latest of the given instants, ignoring ``None``."""
    present = [as_utc(value) for value in values if value is not None]
    if not present:
        raise ValueError("later_of() needs at least one timestamp")
    return max(present)
