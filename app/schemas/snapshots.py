"""Structured snapshots stored in audit rows, billing events and webhook logs.

Each known shape carries a ``kind`` discriminator. ``FreeformSnapshot`` holds
anything else as a plain mapping.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, TypeAdapter

from app.models.billing import Invoice, InvoiceStatus, InvoiceType, Payment, PaymentStatus
from app.models.entitlement import EntitlementKey, UserEntitlement
from app.models.subscription import Subscription, SubscriptionStatus
from app.services.common import as_utc

UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class _SnapshotBase(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class SubscriptionSnapshot(_SnapshotBase):
    kind: Literal["subscription"] = "subscription"
    id: UUID
    user_id: UUID
    plan_id: UUID
    status: SubscriptionStatus
    started_at: UtcDatetime
    ends_at: UtcDatetime
    renewal_at: UtcDatetime | None = None
    cancel_at_period_end: bool
    provider_ref: str | None = None
    updated_at: UtcDatetime | None = None


class PaymentSnapshot(_SnapshotBase):
    kind: Literal["payment"] = "payment"
    id: UUID
    user_id: UUID
    provider: str
    provider_ref: str
    status: PaymentStatus
    amount: int
    refunded_amount: int
    currency: str
    updated_at: UtcDatetime | None = None


class InvoiceSnapshot(_SnapshotBase):
    kind: Literal["invoice"] = "invoice"
    id: UUID
    number: str | None = None
    type: InvoiceType
    status: InvoiceStatus
    total: int
    currency: str
    related_invoice_id: UUID | None = None
    notes: str | None = None
    updated_at: UtcDatetime | None = None


class EntitlementSnapshot(_SnapshotBase):
    kind: Literal["entitlement"] = "entitlement"
    key: EntitlementKey
    expires_at: UtcDatetime | None = None
    remaining_credits: int | None = None
    updated_at: UtcDatetime | None = None


class FreeformSnapshot(BaseModel):
    kind: Literal["freeform"] = "freeform"
    data: dict[str, Any] = Field(default_factory=dict)


Snapshot = Annotated[
    Union[
        SubscriptionSnapshot,
        PaymentSnapshot,
        InvoiceSnapshot,
        EntitlementSnapshot,
        FreeformSnapshot,
    ],
    Field(discriminator="kind"),
]

snapshot_state_adapter = TypeAdapter(dict[str, Union[Snapshot, None]])

_SNAPSHOT_TYPES = {
    Subscription: SubscriptionSnapshot,
    Payment: PaymentSnapshot,
    Invoice: InvoiceSnapshot,
    UserEntitlement: EntitlementSnapshot,
}


def snapshot_of(obj) -> Snapshot | None:
    """Build the snapshot matching a model instance (or wrap a mapping)."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return FreeformSnapshot(data=obj)
    snapshot_cls = _SNAPSHOT_TYPES.get(type(obj))
    if snapshot_cls is None:
        raise TypeError(f"No snapshot shape for {type(obj).__name__}")
    return snapshot_cls.model_validate(obj)


def dump_state(**entries) -> dict[str, Any]:
    """Serialize named model instances/snapshots into a JSON-ready mapping."""
    state = {}
    for name, value in entries.items():
        if value is None or isinstance(value, BaseModel):
            state[name] = value
        else:
            state[name] = snapshot_of(value)
    return snapshot_state_adapter.dump_python(state, mode="json")


def load_state(raw: dict[str, Any] | None) -> dict[str, Snapshot | None]:
    return snapshot_state_adapter.validate_python(raw or {})


class ProviderPayload(BaseModel):
    """Raw provider body: a few commonly present fields, everything else kept as-is."""

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    event: str | None = None
    status: str | None = None
    reference: str | None = None
