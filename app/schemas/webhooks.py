from __future__ import annotations

import enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from app.models.billing import PaymentStatus
from app.schemas.snapshots import ProviderPayload


class WebhookPaymentStatus(enum.Enum):
    PAID = "PAID"
    PENDING = "PENDING"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


WEBHOOK_STATUS_TO_PAYMENT = {
    WebhookPaymentStatus.PAID: PaymentStatus.paid,
    WebhookPaymentStatus.PENDING: PaymentStatus.pending,
    WebhookPaymentStatus.FAILED: PaymentStatus.failed,
    WebhookPaymentStatus.REFUNDED: PaymentStatus.refunded,
}


class _WebhookModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WebhookEventIngest(_WebhookModel):
    """A provider event whose authenticity was already verified upstream."""

    provider: str = Field(min_length=1, max_length=40)
    external_id: str = Field(min_length=1, max_length=191)
    provider_ref: str = Field(min_length=1, max_length=191)
    status: WebhookPaymentStatus
    amount: int = Field(ge=0)
    currency: str = Field(min_length=3, max_length=3)
    raw_payload: ProviderPayload = Field(default_factory=ProviderPayload)
    user_id: UUID
    checkout_session_id: UUID | None = None
    signature: str | None = Field(default=None, max_length=512)
    event_type: str | None = Field(default=None, max_length=120)

    @field_validator("status", mode="before")
    @classmethod
    def _upper_status(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class InvalidWebhookRecord(_WebhookModel):
    provider: str = Field(min_length=1, max_length=40)
    external_id: str = Field(min_length=1, max_length=191)
    raw_payload: dict[str, Any] = Field(default_factory=dict)
    signature: str | None = Field(default=None, max_length=512)
    event_type: str | None = Field(default=None, max_length=120)
    error: str | None = None


class WebhookIngestResult(_WebhookModel):
    idempotent: bool
    webhook_log_id: UUID
    payment_id: UUID | None = None
    payment_status: PaymentStatus | None = None
    invoice_id: UUID | None = None
    invoice_number: str | None = None
    invoice_created: bool = False
    entitlement: str | None = None
