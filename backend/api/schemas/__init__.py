"""
API request and response schemas.
"""

from .subscriptions import (
    AdminSubscriptionDetailResponse,
    AdminSubscriptionItem,
    AdminSubscriptionListResponse,
    CurrentSubscriptionResponse,
    ProviderSubscriptionResponse,
    SubscriptionCheckResponse,
    SubscriptionFixResponse,
    SubscriptionRecordResponse,
    WebhookAck,
)

__all__ = [
    "AdminSubscriptionDetailResponse",
    "AdminSubscriptionItem",
    "AdminSubscriptionListResponse",
    "CurrentSubscriptionResponse",
    "ProviderSubscriptionResponse",
    "SubscriptionCheckResponse",
    "SubscriptionFixResponse",
    "SubscriptionRecordResponse",
    "WebhookAck",
]
