"""Subscription domain entities."""
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Optional

logger = logging.getLogger(__name__)


class SubscriptionPlan(StrEnum):
    """Billing plans sold through the provider."""

    MONTHLY = "monthly"
    ANNUAL = "annual"


class SubscriptionStatus(StrEnum):
    """Local subscription record status."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"
    CANCELED = "canceled"
    TRIALING = "trialing"


class EntitlementStatus(StrEnum):
    """Entitlement flag stored on the user row."""

    FREE = "FREE"
    PREMIUM = "PREMIUM"


# Provider statuses that have no local counterpart
_PROVIDER_STATUS_ALIASES = {
    "unpaid": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "cancelled": SubscriptionStatus.CANCELED,
}


def normalize_status(value: Optional[str]) -> SubscriptionStatus:
    """Map a provider subscription status onto the local status set."""
    raw = (value or "").strip().lower()
    try:
        return SubscriptionStatus(raw)
    except ValueError:
        pass
    if raw in _PROVIDER_STATUS_ALIASES:
        return _PROVIDER_STATUS_ALIASES[raw]
    logger.warning("Unknown provider subscription status %r, treating as incomplete", value)
    return SubscriptionStatus.INCOMPLETE


def entitlement_for(status: Optional[str]) -> EntitlementStatus:
    """PREMIUM if and only if the subscription is active."""
    if status == SubscriptionStatus.ACTIVE.value:
        return EntitlementStatus.PREMIUM
    return EntitlementStatus.FREE


def parse_plan(value: Optional[str]) -> Optional[SubscriptionPlan]:
    """Parse a plan name from checkout metadata; None when absent or unknown."""
    if not value:
        return None
    try:
        return SubscriptionPlan(value.strip().lower())
    except ValueError:
        return None


def resolve_plan(
    price_id: Optional[str],
    interval: Optional[str],
    monthly_price_ids: Iterable[str] = (),
    annual_price_ids: Iterable[str] = (),
) -> SubscriptionPlan:
    """
    Determine the plan for a price.

    Configured price ids win, then the price's recurring interval. A price
    that matches neither is logged and treated as monthly.
    """
    if price_id and price_id in set(annual_price_ids):
        return SubscriptionPlan.ANNUAL
    if price_id and price_id in set(monthly_price_ids):
        return SubscriptionPlan.MONTHLY
    if interval == "month":
        return SubscriptionPlan.MONTHLY
    if interval == "year":
        return SubscriptionPlan.ANNUAL
    logger.warning(
        "Unknown price %s (interval=%s), defaulting plan to monthly", price_id, interval
    )
    return SubscriptionPlan.MONTHLY


def timestamp_to_datetime(value: Any) -> Optional[datetime]:
    """Convert a unix timestamp from a provider payload to an aware datetime."""
    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError):
        logger.warning("Ignoring unparseable provider timestamp %r", value)
        return None


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Full state of one provider subscription at the time it was observed."""

    subscription_id: str
    customer_id: Optional[str]
    status: SubscriptionStatus
    price_id: Optional[str]
    interval: Optional[str]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    metadata: dict[str, Any]

    @classmethod
    def from_provider_object(cls, data: dict[str, Any]) -> "SubscriptionSnapshot":
        """Build a snapshot from a provider ``subscription`` object."""
        items = (data.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price") or data.get("plan") or {}
        recurring = price.get("recurring") or {}

        customer = data.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")

        # Newer API versions moved the billing period onto subscription items
        period_end = data.get("current_period_end")
        if period_end is None:
            period_end = first_item.get("current_period_end")

        return cls(
            subscription_id=data.get("id", ""),
            customer_id=customer,
            status=normalize_status(data.get("status")),
            price_id=price.get("id"),
            interval=recurring.get("interval") or price.get("interval"),
            current_period_end=timestamp_to_datetime(period_end),
            cancel_at_period_end=bool(data.get("cancel_at_period_end", False)),
            metadata=dict(data.get("metadata") or {}),
        )

    def plan(
        self,
        monthly_price_ids: Iterable[str] = (),
        annual_price_ids: Iterable[str] = (),
    ) -> SubscriptionPlan:
        """Plan from subscription metadata if valid, otherwise from the price."""
        return parse_plan(self.metadata.get("plan")) or resolve_plan(
            self.price_id, self.interval, monthly_price_ids, annual_price_ids
        )
