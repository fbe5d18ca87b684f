from app.tasks.billing import expire_lapsed_subscriptions, sync_subscription_entitlements
from app.tasks.events import retry_failed_billing_events

__all__ = [
    "expire_lapsed_subscriptions",
    "sync_subscription_entitlements",
    "retry_failed_billing_events",
]
