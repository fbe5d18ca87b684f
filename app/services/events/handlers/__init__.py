from app.services.events.handlers.entitlement_sync import EntitlementSyncHandler
from app.services.events.handlers.forwarder import BillingEventForwarder
from app.services.events.handlers.notification import NotificationHandler

__all__ = ["BillingEventForwarder", "EntitlementSyncHandler", "NotificationHandler"]
