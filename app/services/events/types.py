"""Event types and data structures for billing events.

Event naming convention: {entity}.{action}
"""

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from app.schemas.snapshots import SubscriptionSnapshot


class BillingEventType(enum.Enum):
    # Subscription lifecycle
    subscription_activated = "subscription.activated"
    subscription_restarted = "subscription.restarted"
    subscription_renewed = "subscription.renewed"
    subscription_expired = "subscription.expired"
    subscription_cancel_at_period_end_set = "subscription.cancel_at_period_end_set"
    subscription_cancel_at_period_end_cleared = "subscription.cancel_at_period_end_cleared"

    # Subscription admin actions
    subscription_admin_cancelled = "subscription.admin_cancelled"
    subscription_admin_cancel_at_period_end = "subscription.admin_cancel_at_period_end"
    subscription_admin_ends_adjusted = "subscription.admin_ends_adjusted"
    subscription_admin_entitlements_synced = "subscription.admin_entitlements_synced"

    # Payments
    payment_failed = "payment.failed"
    payment_admin_refunded = "payment.admin_refunded"
    payment_admin_marked_failed = "payment.admin_marked_failed"

    # Invoices
    invoice_ready = "invoice.ready"
    invoice_admin_voided = "invoice.admin_voided"
    invoice_admin_resynced = "invoice.admin_resynced"


@dataclass
class BillingEvent:
    """A billing fact published after its transaction committed."""

    event_type: BillingEventType
    payload: dict[str, Any] = field(default_factory=dict)
    event_id: UUID = field(default_factory=uuid4)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    actor: str | None = None
    user_id: UUID | None = None
    subscription_id: UUID | None = None
    plan_id: UUID | None = None
    payment_id: UUID | None = None
    invoice_id: UUID | None = None
    subscription: SubscriptionSnapshot | None = None

    @classmethod
    def for_subscription(
        cls,
        event_type: BillingEventType,
        subscription,
        payload: dict[str, Any] | None = None,
        actor: str | None = None,
    ) -> "BillingEvent":
        return cls(
            event_type=event_type,
            payload=payload or {},
            actor=actor,
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            plan_id=subscription.plan_id,
            subscription=SubscriptionSnapshot.model_validate(subscription),
        )

    def stored_payload(self) -> dict[str, Any]:
        """Payload as persisted in the event store (snapshot included)."""
        data = dict(_serialize(self.payload))
        if self.subscription is not None:
            data["subscription"] = self.subscription.model_dump(mode="json")
        return data

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary for JSON serialization."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type.value,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": self.stored_payload(),
            "context": {
                "actor": self.actor,
                "user_id": str(self.user_id) if self.user_id else None,
                "subscription_id": str(self.subscription_id) if self.subscription_id else None,
                "plan_id": str(self.plan_id) if self.plan_id else None,
                "payment_id": str(self.payment_id) if self.payment_id else None,
                "invoice_id": str(self.invoice_id) if self.invoice_id else None,
            },
        }


def _serialize(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _serialize(val) for key, val in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(item) for item in value]
    return value
