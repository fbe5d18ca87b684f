from __future__ import annotations

import enum
from datetime import datetime
from typing import Annotated, Any
from uuid import UUID

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel

from app.services.common import as_utc

ReasonText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=5, max_length=2000)]
IsoTimestamp = Annotated[datetime, AfterValidator(as_utc)]
IdempotencyKey = Annotated[str, StringConstraints(strip_whitespace=True, min_length=8, max_length=191)]


class RefundPolicy(enum.Enum):
    revoke_now = "revoke_now"
    keep_until_end = "keep_until_end"


class AdminActor(BaseModel):
    """Authenticated operator, as resolved by the auth gateway."""

    id: UUID
    email: str | None = None
    roles: list[str] = Field(default_factory=list)


class _AdminInput(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class AdminActionInput(_AdminInput):
    id: UUID
    reason: ReasonText
    updated_at: IsoTimestamp
    idempotency_key: IdempotencyKey | None = None


class RefundPaymentInput(AdminActionInput):
    policy: RefundPolicy
    amount: int = Field(gt=0, strict=True)


class MarkPaymentFailedInput(AdminActionInput):
    pass


class CancelNowInput(AdminActionInput):
    pass


class CancelAtPeriodEndInput(AdminActionInput):
    cancel: bool


class AdjustEndsAtInput(AdminActionInput):
    new_ends_at: IsoTimestamp
    new_renewal_at: IsoTimestamp | None = None


class RecomputeEntitlementsInput(_AdminInput):
    user_id: UUID
    subscription_id: UUID
    reason: ReasonText
    idempotency_key: IdempotencyKey | None = None


class VoidInvoiceInput(AdminActionInput):
    pass


class ResyncInvoiceNumberInput(AdminActionInput):
    pass


class AdminActionResult(BaseModel):
    ok: bool
    error: str | None = None
    idempotent: bool = False
    data: dict[str, Any] | None = None
