"""
SQLAlchemy database models.
"""

from .base import Base, TimestampMixin
from .notification import (
    Notification,
    NotificationStatus,
    NotificationType,
    ProcessedWebhookEvent,
)
from .subscription import SubscriptionRecord
from .user import ENTITLEMENT_ENUM_NAME, User, UserRole, UserStatus

__all__ = [
    "Base",
    "TimestampMixin",
    "User",
    "UserRole",
    "UserStatus",
    "ENTITLEMENT_ENUM_NAME",
    "SubscriptionRecord",
    "Notification",
    "NotificationStatus",
    "NotificationType",
    "ProcessedWebhookEvent",
]
