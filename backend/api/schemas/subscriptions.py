"""
Subscription, webhook and admin response schemas.

Responses are serialized with camelCase keys for the web client.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from core.domain.subscription import EntitlementStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class WebhookAck(CamelModel):
    """Acknowledgement returned to the billing provider."""

    received: bool = Field(True, description="The delivery was authenticated and accepted")
    outcome: str = Field(..., description="processed, ignored, dropped or duplicate")


class SubscriptionFixResponse(CamelModel):
    """Result of a reconciliation run."""

    success: bool = Field(..., description="Flag agrees with the reconciled record")
    message: str = Field(..., description="Human readable summary")
    old_status: str = Field(..., description="Entitlement flag before reconciliation")
    new_status: str = Field(..., description="Entitlement flag after reconciliation")
    subscription_created: bool = Field(
        ..., description="A subscription record was created during reconciliation"
    )
    provider_error: str | None = Field(
        None, description="Set when the billing provider could not be reached"
    )


class SubscriptionCheckResponse(CamelModel):
    """Read-only comparison of the entitlement flag and the subscription record."""

    user_id: str
    current_status: str
    has_active_subscription: bool
    has_mismatch: bool
    needs_fix: bool
    is_admin: bool


class SubscriptionRecordResponse(CamelModel):
    """Local subscription record."""

    id: str
    user_id: str
    external_customer_id: str | None = None
    external_subscription_id: str | None = None
    price_id: str | None = None
    plan: str
    status: str
    current_period_end: datetime | None = None
    cancel_at_period_end: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CurrentSubscriptionResponse(CamelModel):
    entitlement: str = Field(..., description="FREE or PREMIUM")
    subscription: SubscriptionRecordResponse | None = None


class SubscriptionOwner(CamelModel):
    id: str
    email: str
    name: str
    subscription_status: EntitlementStatus


class AdminSubscriptionItem(SubscriptionRecordResponse):
    user: SubscriptionOwner


class AdminSubscriptionListResponse(CamelModel):
    items: list[AdminSubscriptionItem]
    total: int
    page: int
    limit: int
    pages: int


class ProductDetailsResponse(CamelModel):
    price_id: str | None = None
    product_id: str | None = None
    name: str | None = None
    description: str | None = None
    amount: float | None = None
    currency: str | None = None
    interval: str | None = None
    interval_count: int | None = None


class PaymentMethodResponse(CamelModel):
    id: str
    type: str | None = None
    last4: str | None = None
    brand: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None


class InvoiceResponse(CamelModel):
    id: str
    number: str | None = None
    status: str | None = None
    amount_paid: float
    amount_due: float
    currency: str | None = None
    created: datetime | None = None
    hosted_invoice_url: str | None = None


class ProviderSubscriptionResponse(CamelModel):
    """Live view of the subscription at the billing provider."""

    id: str
    status: str
    customer_id: str | None = None
    customer_email: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    cancel_at: datetime | None = None
    canceled_at: datetime | None = None
    start_date: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    product: ProductDetailsResponse | None = None
    payment_method: PaymentMethodResponse | None = None
    latest_invoice: InvoiceResponse | None = None
    stripe_url: str | None = None


class AdminSubscriptionDetailResponse(CamelModel):
    """Local record merged with the provider's live view when reachable."""

    subscription: AdminSubscriptionItem
    provider: ProviderSubscriptionResponse | None = None
    provider_error: str | None = Field(
        None, description="Why live provider data is missing, if it is"
    )
