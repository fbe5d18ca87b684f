import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


class WebhookLogStatus(enum.Enum):
    received = "received"
    handled = "handled"
    invalid = "invalid"
    failed = "failed"


class WebhookLog(Base):
    __tablename__ = "webhook_logs"
    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_webhook_logs_provider_external_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    external_id: Mapped[str] = mapped_column(String(191), nullable=False)
    event_type: Mapped[str | None] = mapped_column(String(120))
    signature: Mapped[str | None] = mapped_column(String(512))
    payload: Mapped[dict | None] = mapped_column(JSONB)
    status: Mapped[WebhookLogStatus] = mapped_column(
        Enum(WebhookLogStatus), nullable=False, default=WebhookLogStatus.received
    )
    error: Mapped[str | None] = mapped_column(Text)
    payment_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("payments.id")
    )
    handled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
