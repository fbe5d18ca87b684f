from app.models.audit import AuditLog  # noqa: F401
from app.models.billing import (  # noqa: F401
    Invoice,
    InvoiceStatus,
    InvoiceType,
    Payment,
    PaymentStatus,
)
from app.models.catalog import (  # noqa: F401
    CheckoutSession,
    Plan,
    PlanCycle,
    Price,
    Product,
    ProductType,
)
from app.models.entitlement import (  # noqa: F401
    EntitlementKey,
    JobCreditGrant,
    UserEntitlement,
)
from app.models.event_store import BillingEventRecord, EventStatus  # noqa: F401
from app.models.sequence import InvoiceSequence  # noqa: F401
from app.models.subscription import Subscription, SubscriptionStatus  # noqa: F401
from app.models.webhook import WebhookLog, WebhookLogStatus  # noqa: F401
