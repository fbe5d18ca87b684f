"""Entitlement sync handler: asks the collaborator to refresh a user's access."""

import logging

from sqlalchemy.orm import Session

from app.services.collaborator import CollaboratorGateway
from app.services.events.types import BillingEvent, BillingEventType

logger = logging.getLogger(__name__)

ACCESS_CHANGING_EVENTS = {
    BillingEventType.subscription_activated,
    BillingEventType.subscription_restarted,
    BillingEventType.subscription_renewed,
    BillingEventType.subscription_expired,
    BillingEventType.subscription_admin_cancelled,
    BillingEventType.subscription_admin_ends_adjusted,
    BillingEventType.subscription_admin_entitlements_synced,
    BillingEventType.payment_admin_refunded,
}


class EntitlementSyncHandler:
    def __init__(self, gateway: CollaboratorGateway):
        self.gateway = gateway

    def handle(self, db: Session, event: BillingEvent) -> None:
        if event.event_type not in ACCESS_CHANGING_EVENTS or event.user_id is None:
            return
        self.gateway.request_entitlement_sync(str(event.user_id))
