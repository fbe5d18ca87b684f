"""Billing services package.

Provider webhook ingestion plus the administrative reconciliation workflows:

    from app.services import billing as billing_service
    billing_service.process_webhook(db, events, payload)
    billing_service.payment_actions.refund(db, events, actor, data)
"""

from app.services.billing.admin_invoices import InvoiceActions, invoice_actions
from app.services.billing.admin_payments import PaymentActions, payment_actions
from app.services.billing.admin_subscriptions import SubscriptionActions, subscription_actions
from app.services.billing.webhooks import process_webhook, record_invalid_webhook

__all__ = [
    # Classes
    "InvoiceActions",
    "PaymentActions",
    "SubscriptionActions",
    # Singleton instances
    "invoice_actions",
    "payment_actions",
    "subscription_actions",
    # Webhooks
    "process_webhook",
    "record_invalid_webhook",
]
