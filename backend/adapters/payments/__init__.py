"""Payment adapters for billing and subscription management."""

from .stripe_adapter import (
    StripeAdapter,
    StripeAPIError,
    StripeAuthError,
    StripeCustomer,
    StripeError,
    StripeInvoiceSummary,
    StripeNotFoundError,
    StripePaymentMethod,
    StripeProductDetails,
    StripeSubscriptionDetails,
    StripeWebhookError,
    create_stripe_adapter,
)

__all__ = [
    "StripeAdapter",
    "StripeAPIError",
    "StripeAuthError",
    "StripeCustomer",
    "StripeError",
    "StripeInvoiceSummary",
    "StripeNotFoundError",
    "StripePaymentMethod",
    "StripeProductDetails",
    "StripeSubscriptionDetails",
    "StripeWebhookError",
    "create_stripe_adapter",
]
