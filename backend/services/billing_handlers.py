"""
Handlers for supported billing provider events.

Each handler writes the subscription record first and commits, then hands
the derived flag to the entitlement synchronizer as a separate write. Every
write is an upsert or an absolute assignment, so re-running a handler for a
redelivered event leaves the same state behind.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adapters.payments.stripe_adapter import StripeAdapter, StripeNotFoundError
from core.domain.billing_events import (
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionChanged,
    SubscriptionDeleted,
    WebhookOutcome,
)
from core.domain.subscription import (
    EntitlementStatus,
    SubscriptionPlan,
    SubscriptionSnapshot,
    SubscriptionStatus,
    entitlement_for,
)
from infrastructure.config.settings import settings
from infrastructure.database.models import User
from services.billing_notifications import BillingNotificationService
from services.entitlement_sync import EntitlementSynchronizer
from services.subscription_store import SubscriptionRecordStore

logger = logging.getLogger(__name__)


def plan_for(snapshot: SubscriptionSnapshot) -> SubscriptionPlan:
    return snapshot.plan(settings.stripe_price_monthly_list, settings.stripe_price_annual_list)


class BillingEventHandlers:
    """One coroutine per supported event variant."""

    def __init__(
        self,
        db: AsyncSession,
        provider: StripeAdapter,
        store: SubscriptionRecordStore,
        synchronizer: EntitlementSynchronizer,
        notifications: BillingNotificationService,
    ):
        self.db = db
        self.provider = provider
        self.store = store
        self.synchronizer = synchronizer
        self.notifications = notifications

    async def _get_user(self, user_id: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.id == user_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def handle_checkout_completed(self, event: CheckoutCompleted) -> WebhookOutcome:
        if not event.user_id:
            logger.warning("Checkout %s has no user reference, dropping", event.session_id)
            return WebhookOutcome.DROPPED

        user = await self._get_user(event.user_id)
        if user is None:
            logger.warning(
                "Checkout %s references unknown user %s, dropping",
                event.session_id,
                event.user_id,
            )
            return WebhookOutcome.DROPPED

        snapshot = await self._checkout_subscription(event)
        if snapshot is None:
            logger.warning(
                "Checkout %s has no subscription at the provider (customer=%s), dropping",
                event.session_id,
                event.customer_id,
            )
            return WebhookOutcome.DROPPED

        record = await self.store.upsert_from_snapshot(
            user.id,
            snapshot,
            plan=event.plan or plan_for(snapshot),
            customer_id=event.customer_id,
            status=SubscriptionStatus.ACTIVE,
        )
        await self.db.commit()

        await self.synchronizer.sync(record.user_id, EntitlementStatus.PREMIUM)
        logger.info(
            "Checkout completed for user %s (subscription=%s)",
            record.user_id,
            record.external_subscription_id,
        )
        return WebhookOutcome.PROCESSED

    async def _checkout_subscription(
        self, event: CheckoutCompleted
    ) -> Optional[SubscriptionSnapshot]:
        if event.subscription_id:
            try:
                return await self.provider.get_subscription(event.subscription_id)
            except StripeNotFoundError:
                return None
        if event.customer_id:
            active = await self.provider.list_subscriptions(event.customer_id, status="active")
            return active[0] if active else None
        return None

    async def handle_subscription_changed(self, event: SubscriptionChanged) -> WebhookOutcome:
        snapshot = event.snapshot
        plan = plan_for(snapshot)

        record = await self.store.apply_snapshot(snapshot, plan)
        if record is None and snapshot.customer_id:
            sibling = await self.store.get_by_customer_id(snapshot.customer_id)
            if sibling is not None:
                logger.info(
                    "Subscription %s unknown locally, re-linking via customer %s to user %s",
                    snapshot.subscription_id,
                    snapshot.customer_id,
                    sibling.user_id,
                )
                record = await self.store.upsert_from_snapshot(sibling.user_id, snapshot, plan)

        if record is None:
            logger.warning(
                "No local record for subscription %s (customer=%s), dropping %s",
                snapshot.subscription_id,
                snapshot.customer_id,
                event.event_type,
            )
            return WebhookOutcome.DROPPED

        await self.db.commit()
        await self.synchronizer.sync(record.user_id, entitlement_for(record.status))
        return WebhookOutcome.PROCESSED

    async def handle_subscription_deleted(self, event: SubscriptionDeleted) -> WebhookOutcome:
        record = await self.store.mark_canceled(event.subscription_id)
        if record is None:
            logger.warning(
                "No local record for deleted subscription %s, dropping", event.subscription_id
            )
            return WebhookOutcome.DROPPED

        await self.db.commit()
        await self.synchronizer.sync(record.user_id, EntitlementStatus.FREE)
        return WebhookOutcome.PROCESSED

    async def handle_invoice_paid(self, event: InvoicePaid) -> WebhookOutcome:
        if not event.is_renewal:
            logger.debug(
                "Invoice %s billing_reason=%s does not renew a subscription",
                event.invoice_id,
                event.billing_reason,
            )
            return WebhookOutcome.IGNORED

        if not event.subscription_id:
            logger.warning("Paid invoice %s has no subscription, dropping", event.invoice_id)
            return WebhookOutcome.DROPPED

        existing = await self.store.get_by_subscription_id(event.subscription_id)
        if existing is None:
            logger.warning(
                "No local record for subscription %s on paid invoice %s, dropping",
                event.subscription_id,
                event.invoice_id,
            )
            return WebhookOutcome.DROPPED

        try:
            snapshot = await self.provider.get_subscription(event.subscription_id)
        except StripeNotFoundError:
            logger.warning(
                "Provider no longer knows subscription %s, dropping invoice %s",
                event.subscription_id,
                event.invoice_id,
            )
            return WebhookOutcome.DROPPED

        record = await self.store.mark_paid(event.subscription_id, snapshot.current_period_end)
        if record is None:
            return WebhookOutcome.DROPPED
        await self.db.commit()

        await self.synchronizer.sync(record.user_id, EntitlementStatus.PREMIUM)
        return WebhookOutcome.PROCESSED

    async def handle_invoice_payment_failed(
        self, event: InvoicePaymentFailed
    ) -> WebhookOutcome:
        """Notify the user; the entitlement flag is left alone."""
        if not event.subscription_id:
            logger.warning("Failed invoice %s has no subscription, dropping", event.invoice_id)
            return WebhookOutcome.DROPPED

        record = await self.store.get_by_subscription_id(event.subscription_id)
        if record is None:
            logger.warning(
                "No local record for subscription %s on failed invoice %s, dropping",
                event.subscription_id,
                event.invoice_id,
            )
            return WebhookOutcome.DROPPED

        created = await self.notifications.record_payment_failed(
            record.user_id, event.invoice_id, event.attempt_count
        )
        await self.db.commit()

        if created:
            user = await self._get_user(record.user_id)
            if user is not None:
                await self.notifications.send_payment_failed_email(
                    user,
                    amount_due=event.amount_due,
                    currency=event.currency,
                    invoice_url=event.hosted_invoice_url,
                )
        return WebhookOutcome.PROCESSED
