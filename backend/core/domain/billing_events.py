"""
Billing provider webhook events.

Provider envelopes are parsed into a closed set of event variants. Anything
outside the supported set becomes an ``IgnoredEvent`` so that dispatch can
treat "not ours" separately from "ours but unresolvable".
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Optional, Union

from .subscription import SubscriptionPlan, SubscriptionSnapshot, parse_plan

# Billing reasons that represent a subscription being (re)paid for
RENEWAL_BILLING_REASONS = frozenset({"subscription_create", "subscription_cycle"})


class BillingEventType(StrEnum):
    """Provider event types handled by this service."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


class WebhookOutcome(StrEnum):
    """Result of handling one webhook delivery."""

    PROCESSED = "processed"
    IGNORED = "ignored"
    DROPPED = "dropped"
    DUPLICATE = "duplicate"


class InvalidEventError(ValueError):
    """Raised when an authenticated payload is not a usable event envelope."""


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str
    session_id: str
    user_id: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    plan: Optional[SubscriptionPlan]


@dataclass(frozen=True)
class SubscriptionChanged:
    event_id: str
    event_type: BillingEventType
    snapshot: SubscriptionSnapshot


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str
    subscription_id: str
    customer_id: Optional[str]


@dataclass(frozen=True)
class InvoicePaid:
    event_id: str
    invoice_id: str
    subscription_id: Optional[str]
    customer_id: Optional[str]
    billing_reason: Optional[str]

    @property
    def is_renewal(self) -> bool:
        return self.billing_reason in RENEWAL_BILLING_REASONS


@dataclass(frozen=True)
class InvoicePaymentFailed:
    event_id: str
    invoice_id: str
    subscription_id: Optional[str]
    customer_id: Optional[str]
    attempt_count: int
    amount_due: int
    currency: Optional[str]
    hosted_invoice_url: Optional[str]


@dataclass(frozen=True)
class IgnoredEvent:
    event_id: str
    event_type: str


BillingEvent = Union[
    CheckoutCompleted,
    SubscriptionChanged,
    SubscriptionDeleted,
    InvoicePaid,
    InvoicePaymentFailed,
    IgnoredEvent,
]


def _id_of(value: Any) -> Optional[str]:
    """Expandable provider fields arrive either as an id or as the full object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _invoice_subscription_id(invoice: dict[str, Any]) -> Optional[str]:
    subscription_id = _id_of(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    # Newer API versions nest it under the invoice parent
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _id_of(details.get("subscription"))


def parse_billing_event(envelope: dict[str, Any]) -> BillingEvent:
    """
    Turn a decoded provider envelope into a typed event.

    Raises:
        InvalidEventError: If the envelope lacks an id, a type or a data object
    """
    if not isinstance(envelope, dict):
        raise InvalidEventError("Event payload must be a JSON object")

    event_id = envelope.get("id")
    event_type = envelope.get("type")
    data = envelope.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not event_id or not event_type or not isinstance(obj, dict):
        raise InvalidEventError("Event payload is missing id, type or data.object")

    try:
        kind = BillingEventType(event_type)
    except ValueError:
        return IgnoredEvent(event_id=event_id, event_type=event_type)

    if kind == BillingEventType.CHECKOUT_COMPLETED:
        metadata = obj.get("metadata") or {}
        return CheckoutCompleted(
            event_id=event_id,
            session_id=obj.get("id", ""),
            user_id=obj.get("client_reference_id") or metadata.get("user_id"),
            customer_id=_id_of(obj.get("customer")),
            subscription_id=_id_of(obj.get("subscription")),
            plan=parse_plan(metadata.get("plan")),
        )

    if kind in (BillingEventType.SUBSCRIPTION_CREATED, BillingEventType.SUBSCRIPTION_UPDATED):
        return SubscriptionChanged(
            event_id=event_id,
            event_type=kind,
            snapshot=SubscriptionSnapshot.from_provider_object(obj),
        )

    if kind == BillingEventType.SUBSCRIPTION_DELETED:
        return SubscriptionDeleted(
            event_id=event_id,
            subscription_id=obj.get("id", ""),
            customer_id=_id_of(obj.get("customer")),
        )

    if kind == BillingEventType.INVOICE_PAYMENT_SUCCEEDED:
        return InvoicePaid(
            event_id=event_id,
            invoice_id=obj.get("id", ""),
            subscription_id=_invoice_subscription_id(obj),
            customer_id=_id_of(obj.get("customer")),
            billing_reason=obj.get("billing_reason"),
        )

    return InvoicePaymentFailed(
        event_id=event_id,
        invoice_id=obj.get("id", ""),
        subscription_id=_invoice_subscription_id(obj),
        customer_id=_id_of(obj.get("customer")),
        attempt_count=int(obj.get("attempt_count") or 1),
        amount_due=int(obj.get("amount_due") or 0),
        currency=obj.get("currency"),
        hosted_invoice_url=obj.get("hosted_invoice_url"),
    )
