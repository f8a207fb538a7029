"""
In-app notification and processed webhook event models.
"""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class NotificationType(str, Enum):
    PAYMENT_FAILED = "PAYMENT_FAILED"


class NotificationStatus(str, Enum):
    UNREAD = "UNREAD"
    READ = "READ"


class Notification(Base, TimestampMixin):
    """Message shown to a user in the app."""

    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=NotificationStatus.UNREAD.value,
        nullable=False,
    )
    # Provider-derived key so redelivered events cannot notify twice
    dedupe_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    __table_args__ = (Index("ix_notifications_user_status", "user_id", "status"),)

    def __repr__(self) -> str:
        return f"<Notification(id={self.id}, user_id={self.user_id}, type={self.type})>"


class ProcessedWebhookEvent(Base):
    """Provider event ids that have been handled to completion."""

    __tablename__ = "billing_webhook_events"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ProcessedWebhookEvent(id={self.id}, type={self.event_type})>"
