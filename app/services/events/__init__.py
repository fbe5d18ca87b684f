"""Billing event publication.

Usage:
    from app.services.events import build_dispatcher
    from app.services.events.types import BillingEvent, BillingEventType

    events = build_dispatcher()
    events.publish(
        db,
        BillingEvent.for_subscription(BillingEventType.subscription_renewed, subscription),
    )
"""

import logging

from app.services.collaborator import CollaboratorGateway, build_gateway
from app.services.events.dispatcher import BillingEventDispatcher
from app.services.events.handlers import (
    BillingEventForwarder,
    EntitlementSyncHandler,
    NotificationHandler,
)
from app.services.events.types import BillingEvent, BillingEventType

logger = logging.getLogger(__name__)


def build_dispatcher(gateway: CollaboratorGateway | None = None) -> BillingEventDispatcher:
    """Create a dispatcher with the standard handlers wired to ``gateway``."""
    gateway = gateway or build_gateway()
    dispatcher = BillingEventDispatcher()
    dispatcher.register_handler(NotificationHandler(gateway))
    dispatcher.register_handler(EntitlementSyncHandler(gateway))
    dispatcher.register_handler(BillingEventForwarder(gateway))
    logger.info("Billing event handlers initialized: notification, entitlement_sync, forwarder")
    return dispatcher


__all__ = [
    "BillingEvent",
    "BillingEventDispatcher",
    "BillingEventType",
    "build_dispatcher",
]
