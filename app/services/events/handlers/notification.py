"""Notification handler: turns billing events into notification requests."""

import logging
from typing import Any

from sqlalchemy.orm import Session

from app.config import settings
from app.services.collaborator import CollaboratorGateway, NotificationKind
from app.services.events.types import BillingEvent, BillingEventType

logger = logging.getLogger(__name__)


EVENT_TYPE_TO_NOTIFICATION = {
    BillingEventType.payment_failed: NotificationKind.payment_failed,
    BillingEventType.payment_admin_marked_failed: NotificationKind.payment_failed,
    BillingEventType.payment_admin_refunded: NotificationKind.refund_issued,
    BillingEventType.invoice_ready: NotificationKind.invoice_ready,
    BillingEventType.subscription_admin_cancelled: NotificationKind.cancel_immediate,
    BillingEventType.subscription_cancel_at_period_end_set: NotificationKind.cancel_scheduled,
}


class NotificationHandler:
    """Requests customer notifications from the collaborator."""

    def __init__(self, gateway: CollaboratorGateway):
        self.gateway = gateway

    def handle(self, db: Session, event: BillingEvent) -> None:
        kind = EVENT_TYPE_TO_NOTIFICATION.get(event.event_type)
        if kind is None:
            return
        if event.user_id is None:
            logger.debug(f"No recipient for billing event {event.event_type.value}")
            return
        self.gateway.send_notification(kind, self._payload(kind, event))
        logger.info(
            f"Requested {kind.value} notification for user {event.user_id} "
            f"(event {event.event_id})"
        )

    @staticmethod
    def _payload(kind: NotificationKind, event: BillingEvent) -> dict[str, Any]:
        context = event.to_dict()
        payload: dict[str, Any] = {
            "event_id": context["event_id"],
            "occurred_at": context["occurred_at"],
            **context["context"],
            **context["payload"],
            # Keeps retried deliveries of the same event recognizable downstream
            "dedupe_key": f"{kind.value}:{context['event_id']}",
        }
        if kind is NotificationKind.payment_failed:
            payload.setdefault("retry_url", settings.billing_retry_url)
            payload.setdefault("support_url", settings.billing_support_url)
        return payload
