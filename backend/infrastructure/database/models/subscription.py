"""
Subscription record model.

One row per user mirroring the provider subscription that backs the user's
entitlement. Rows are never deleted; cancellation is a status.
"""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.domain.subscription import SubscriptionPlan, SubscriptionStatus

from .base import Base, TimestampMixin


class SubscriptionRecord(Base, TimestampMixin):
    """Local mirror of a billing provider subscription."""

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )

    external_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # NULL for placeholder records created by reconciliation
    external_subscription_id: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, nullable=True
    )
    price_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    plan: Mapped[str] = mapped_column(
        String(50),
        default=SubscriptionPlan.MONTHLY.value,
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(50),
        default=SubscriptionStatus.INCOMPLETE.value,
        nullable=False,
    )
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    user = relationship("User", lazy="raise")

    __table_args__ = (
        Index("ix_subscriptions_customer", "external_customer_id"),
        Index("ix_subscriptions_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord(id={self.id}, user_id={self.user_id}, "
            f"external_subscription_id={self.external_subscription_id}, status={self.status})>"
        )

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE.value

    @property
    def is_placeholder(self) -> bool:
        return self.external_subscription_id is None
