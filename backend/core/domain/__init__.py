# Domain Entities
# Pure business objects with no external dependencies
from .billing_events import (
    BillingEvent,
    BillingEventType,
    CheckoutCompleted,
    IgnoredEvent,
    InvalidEventError,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionChanged,
    SubscriptionDeleted,
    WebhookOutcome,
    parse_billing_event,
)
from .subscription import (
    EntitlementStatus,
    SubscriptionPlan,
    SubscriptionSnapshot,
    SubscriptionStatus,
    entitlement_for,
)

__all__ = [
    "BillingEvent",
    "BillingEventType",
    "CheckoutCompleted",
    "EntitlementStatus",
    "IgnoredEvent",
    "InvalidEventError",
    "InvoicePaid",
    "InvoicePaymentFailed",
    "SubscriptionChanged",
    "SubscriptionDeleted",
    "SubscriptionPlan",
    "SubscriptionSnapshot",
    "SubscriptionStatus",
    "WebhookOutcome",
    "entitlement_for",
    "parse_billing_event",
]
