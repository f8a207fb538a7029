"""
Unit tests for billing webhook dispatch and event handlers.

Tests:
- Checkout, subscription lifecycle and invoice handlers
- Replay safety (same event N times, duplicate deliveries)
- Order independence of created/updated deliveries
- Payment failures notifying without touching the entitlement
- Processed-event ledger and error propagation
"""

from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from adapters.payments.stripe_adapter import StripeAPIError, StripeNotFoundError
from core.domain.billing_events import WebhookOutcome, parse_billing_event
from core.domain.subscription import EntitlementStatus
from infrastructure.database.models import (
    Notification,
    ProcessedWebhookEvent,
    SubscriptionRecord,
    User,
)
from services.billing_notifications import format_amount, payment_failed_dedupe_key
from services.billing_webhooks import BillingWebhookProcessor
from services.entitlement_sync import EntitlementSyncError, SyncResult, SyncState
from services.subscription_store import SubscriptionRecordStore


@pytest.fixture
def processor(db_session, mock_provider, mock_email) -> BillingWebhookProcessor:
    return BillingWebhookProcessor(db_session, mock_provider, dialect="sqlite", email=mock_email)


@pytest.fixture
async def linked_customer(db_session: AsyncSession, test_user: User) -> User:
    """Free user whose record knows the provider customer but no subscription yet."""
    db_session.add(
        SubscriptionRecord(
            id=str(uuid4()),
            user_id=test_user.id,
            external_customer_id="cus_123",
            status="incomplete",
        )
    )
    await db_session.commit()
    return test_user


async def _flag(db: AsyncSession, user_id: str) -> EntitlementStatus:
    return await db.scalar(select(User.subscription_status).where(User.id == user_id))


async def _record(db: AsyncSession, user_id: str) -> SubscriptionRecord:
    return await SubscriptionRecordStore(db, "sqlite").get_by_user(user_id)


async def _ledger_outcome(db: AsyncSession, event_id: str) -> str | None:
    return await db.scalar(
        select(ProcessedWebhookEvent.outcome).where(ProcessedWebhookEvent.id == event_id)
    )


async def _notification_count(db: AsyncSession, user_id: str) -> int:
    return await db.scalar(
        select(func.count()).select_from(Notification).where(Notification.user_id == user_id)
    )


def _checkout(user_id: str | None, subscription_id: str | None = "sub_123", **extra) -> dict:
    return {
        "id": "cs_test_1",
        "object": "checkout.session",
        "client_reference_id": user_id,
        "customer": "cus_123",
        "subscription": subscription_id,
        "metadata": extra.pop("metadata", {}),
        **extra,
    }


def _invoice(
    billing_reason: str = "subscription_cycle",
    subscription_id: str = "sub_123",
    invoice_id: str = "in_1",
    attempt_count: int = 1,
) -> dict:
    return {
        "id": invoice_id,
        "object": "invoice",
        "customer": "cus_123",
        "subscription": subscription_id,
        "billing_reason": billing_reason,
        "attempt_count": attempt_count,
        "amount_due": 999,
        "currency": "usd",
        "hosted_invoice_url": f"https://invoice.stripe.test/{invoice_id}",
    }


class TestCheckoutCompleted:
    """Tests for checkout.session.completed."""

    @pytest.mark.asyncio
    async def test_grants_premium(
        self, processor, db_session, test_user, mock_provider, snapshot_of, webhook_event
    ):
        """Checkout for an active monthly subscription creates the record and grants premium."""
        mock_provider.get_subscription.return_value = snapshot_of()

        outcome = await processor.process(
            webhook_event("checkout.session.completed", _checkout(test_user.id))
        )

        assert outcome == WebhookOutcome.PROCESSED
        record = await _record(db_session, test_user.id)
        assert record.status == "active"
        assert record.plan == "monthly"
        assert record.external_subscription_id == "sub_123"
        assert await _flag(db_session, test_user.id) == EntitlementStatus.PREMIUM
        mock_provider.get_subscription.assert_awaited_once_with("sub_123")

    @pytest.mark.asyncio
    async def test_checkout_marks_active_even_if_provider_lags(
        self, processor, db_session, test_user, mock_provider, snapshot_of, webhook_event
    ):
        mock_provider.get_subscription.return_value = snapshot_of(status="incomplete")

        await processor.process(webhook_event("checkout.session.completed", _checkout(test_user.id)))

        assert (await _record(db_session, test_user.id)).status == "active"
        assert await _flag(db_session, test_user.id) == EntitlementStatus.PREMIUM

    @pytest.mark.asyncio
    async def test_metadata_plan_used(
        self, processor, db_session, test_user, mock_provider, snapshot_of, webhook_event
    ):
        mock_provider.get_subscription.return_value = snapshot_of()

        await processor.process(
            webhook_event(
                "checkout.session.completed",
                _checkout(test_user.id, metadata={"plan": "annual"}),
            )
        )

        assert (await _record(db_session, test_user.id)).plan == "annual"

    @pytest.mark.asyncio
    async def test_without_subscription_id_uses_customer(
        self, processor, db_session, test_user, mock_provider, snapshot_of, webhook_event
    ):
        mock_provider.list_subscriptions.return_value = [snapshot_of(subscription_id="sub_777")]

        outcome = await processor.process(
            webhook_event("checkout.session.completed", _checkout(test_user.id, None))
        )

        assert outcome == WebhookOutcome.PROCESSED
        mock_provider.list_subscriptions.assert_awaited_once_with("cus_123", status="active")
        assert (await _record(db_session, test_user.id)).external_subscription_id == "sub_777"

    @pytest.mark.asyncio
    async def test_missing_user_reference_dropped(
        self, processor, db_session, mock_provider, webhook_event
    ):
        envelope = webhook_event("checkout.session.completed", _checkout(None))

        outcome = await processor.process(envelope)

        assert outcome == WebhookOutcome.DROPPED
        assert await _ledger_outcome(db_session, envelope["id"]) == "dropped"
        mock_provider.get_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_user_dropped(self, processor, test_user, webhook_event):
        outcome = await processor.process(
            webhook_event("checkout.session.completed", _checkout(str(uuid4())))
        )
        assert outcome == WebhookOutcome.DROPPED

    @pytest.mark.asyncio
    async def test_subscription_gone_at_provider_dropped(
        self, processor, db_session, test_user, mock_provider, webhook_event
    ):
        mock_provider.get_subscription.side_effect = StripeNotFoundError("No such subscription", 404)

        outcome = await processor.process(
            webhook_event("checkout.session.completed", _checkout(test_user.id))
        )

        assert outcome == WebhookOutcome.DROPPED
        assert await _record(db_session, test_user.id) is None
        assert await _flag(db_session, test_user.id) == EntitlementStatus.FREE

    @pytest.mark.asyncio
    async def test_provider_outage_propagates_without_ledger_entry(
        self, processor, db_session, test_user, mock_provider, webhook_event
    ):
        """A transient provider failure must surface so the delivery is retried."""
        mock_provider.get_subscription.side_effect = StripeAPIError("Request failed")
        envelope = webhook_event("checkout.session.completed", _checkout(test_user.id))

        with pytest.raises(StripeAPIError):
            await processor.process(envelope)

        assert await _ledger_outcome(db_session, envelope["id"]) is None


class TestSubscriptionLifecycle:
    """Tests for customer.subscription.* events."""

    @pytest.mark.asyncio
    async def test_deleted_revokes_premium(
        self, processor, db_session, subscribed_user, stripe_subscription, webhook_event
    ):
        outcome = await processor.process(
            webhook_event(
                "customer.subscription.deleted",
                stripe_subscription(status="canceled", cancel_at_period_end=True),
            )
        )

        assert outcome == WebhookOutcome.PROCESSED
        record = await _record(db_session, subscribed_user.id)
        assert record.status == "canceled"
        assert record.cancel_at_period_end is False
        assert await _flag(db_session, subscribed_user.id) == EntitlementStatus.FREE

    @pytest.mark.asyncio
    async def test_checkout_then_delete(
        self, processor, db_session, test_user, mock_provider, snapshot_of,
        stripe_subscription, webhook_event,
    ):
        mock_provider.get_subscription.return_value = snapshot_of()
        await processor.process(webhook_event("checkout.session.completed", _checkout(test_user.id)))
        assert await _flag(db_session, test_user.id) == EntitlementStatus.PREMIUM

        await processor.process(
            webhook_event("customer.subscription.deleted", stripe_subscription(status="canceled"))
        )

        assert (await _record(db_session, test_user.id)).status == "canceled"
        assert await _flag(db_session, test_user.id) == EntitlementStatus.FREE

    @pytest.mark.asyncio
    async def test_deleted_unknown_subscription_dropped(
        self, processor, subscribed_user, stripe_subscription, webhook_event
    ):
        outcome = await processor.process(
            webhook_event(
                "customer.subscription.deleted",
                stripe_subscription(subscription_id="sub_other", customer_id="cus_other"),
            )
        )
        assert outcome == WebhookOutcome.DROPPED

    @pytest.mark.asyncio
    async def test_updated_past_due_revokes_premium(
        self, processor, db_session, subscribed_user, stripe_subscription, webhook_event
    ):
        await processor.process(
            webhook_event("customer.subscription.updated", stripe_subscription(status="past_due"))
        )

        assert (await _record(db_session, subscribed_user.id)).status == "past_due"
        assert await _flag(db_session, subscribed_user.id) == EntitlementStatus.FREE

    @pytest.mark.asyncio
    async def test_updated_reactivation_restores_premium(
        self, processor, db_session, subscribed_user, stripe_subscription, webhook_event
    ):
        await processor.process(
            webhook_event("customer.subscription.updated", stripe_subscription(status="past_due"))
        )
        await processor.process(
            webhook_event("customer.subscription.updated", stripe_subscription(status="active"))
        )

        assert await _flag(db_session, subscribed_user.id) == EntitlementStatus.PREMIUM

    @pytest.mark.asyncio
    async def test_unknown_subscription_relinked_by_customer(
        self, processor, db_session, subscribed_user, stripe_subscription, webhook_event
    ):
        """A replacement subscription for a known customer takes over the user's record."""
        outcome = await processor.process(
            webhook_event(
                "customer.subscription.created",
                stripe_subscription(subscription_id="sub_new", price_id="price_annual"),
            )
        )

        assert outcome == WebhookOutcome.PROCESSED
        record = await _record(db_session, subscribed_user.id)
        assert record.external_subscription_id == "sub_new"
        assert record.plan == "annual"

    @pytest.mark.asyncio
    async def test_unknown_subscription_and_customer_dropped(
        self, processor, db_session, test_user, stripe_subscription, webhook_event
    ):
        outcome = await processor.process(
            webhook_event("customer.subscription.updated", stripe_subscription())
        )

        assert outcome == WebhookOutcome.DROPPED
        assert await _record(db_session, test_user.id) is None


class TestReplaySafety:
    """Tests for redelivery and ordering."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("replays", [1, 2, 5])
    async def test_replaying_update_converges(
        self, processor, db_session, subscribed_user, stripe_subscription, webhook_event, replays
    ):
        """Running the same update N times leaves the same record and flag as once."""
        event = parse_billing_event(
            webhook_event(
                "customer.subscription.updated",
                stripe_subscription(status="active", cancel_at_period_end=True),
                event_id="evt_replay",
            )
        )

        for _ in range(replays):
            assert await processor.dispatch(event) == WebhookOutcome.PROCESSED

        record = await _record(db_session, subscribed_user.id)
        assert record.status == "active"
        assert record.cancel_at_period_end is True
        assert record.current_period_end is not None
        assert await _flag(db_session, subscribed_user.id) == EntitlementStatus.PREMIUM
        total = await db_session.scalar(select(func.count()).select_from(SubscriptionRecord))
        assert total == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "order",
        [
            ("customer.subscription.created", "customer.subscription.updated"),
            ("customer.subscription.updated", "customer.subscription.created"),
        ],
    )
    async def test_created_and_updated_in_any_order(
        self, processor, db_session, linked_customer, stripe_subscription, webhook_event, order
    ):
        for event_type in order:
            await processor.process(webhook_event(event_type, stripe_subscription(status="active")))

        record = await _record(db_session, linked_customer.id)
        assert record.external_subscription_id == "sub_123"
        assert record.status == "active"
        assert await _flag(db_session, linked_customer.id) == EntitlementStatus.PREMIUM

    @pytest.mark.asyncio
    async def test_duplicate_delivery_skipped(
        self, processor, db_session, test_user, mock_provider, snapshot_of, webhook_event
    ):
        mock_provider.get_subscription.return_value = snapshot_of()
        envelope = webhook_event("checkout.session.completed", _checkout(test_user.id))

        first = await processor.process(envelope)
        second = await processor.process(envelope)

        assert first == WebhookOutcome.PROCESSED
        assert second == WebhookOutcome.DUPLICATE
        assert mock_provider.get_subscription.await_count == 1
        assert await _ledger_outcome(db_session, envelope["id"]) == "processed"

    @pytest.mark.asyncio
    async def test_ignored_types_not_recorded(self, processor, db_session, webhook_event):
        envelope = webhook_event("customer.created", {"id": "cus_1"})

        assert await processor.process(envelope) == WebhookOutcome.IGNORED
        assert await _ledger_outcome(db_session, envelope["id"]) is None

    @pytest.mark.asyncio
    async def test_sync_failure_propagates_and_allows_redelivery(
        self, db_session, subscribed_user, mock_provider, stripe_subscription, webhook_event
    ):
        user_id = subscribed_user.id
        synchronizer = AsyncMock()
        synchronizer.sync.side_effect = EntitlementSyncError(
            SyncResult(
                user_id=user_id,
                target=EntitlementStatus.FREE,
                state=SyncState.INCONSISTENT,
                observed=EntitlementStatus.PREMIUM,
            )
        )
        processor = BillingWebhookProcessor(
            db_session, mock_provider, dialect="sqlite", synchronizer=synchronizer
        )
        envelope = webhook_event("customer.subscription.deleted", stripe_subscription())

        with pytest.raises(EntitlementSyncError):
            await processor.process(envelope)

        assert await _ledger_outcome(db_session, envelope["id"]) is None


class TestInvoices:
    """Tests for invoice.* events."""

    @pytest.mark.asyncio
    async def test_renewal_restores_active(
        self, processor, db_session, subscribed_user, mock_provider, snapshot_of,
        stripe_subscription, webhook_event,
    ):
        await processor.process(
            webhook_event("customer.subscription.updated", stripe_subscription(status="past_due"))
        )
        mock_provider.get_subscription.return_value = snapshot_of(period_end=1769904000)

        outcome = await processor.process(webhook_event("invoice.payment_succeeded", _invoice()))

        assert outcome == WebhookOutcome.PROCESSED
        record = await _record(db_session, subscribed_user.id)
        assert record.status == "active"
        assert record.current_period_end.replace(tzinfo=None).month == 2
        assert await _flag(db_session, subscribed_user.id) == EntitlementStatus.PREMIUM

    @pytest.mark.asyncio
    async def test_non_renewal_invoice_ignored(
        self, processor, subscribed_user, mock_provider, webhook_event
    ):
        outcome = await processor.process(
            webhook_event("invoice.payment_succeeded", _invoice(billing_reason="manual"))
        )

        assert outcome == WebhookOutcome.IGNORED
        mock_provider.get_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_paid_invoice_for_unknown_subscription_dropped(
        self, processor, subscribed_user, webhook_event
    ):
        outcome = await processor.process(
            webhook_event("invoice.payment_succeeded", _invoice(subscription_id="sub_x"))
        )
        assert outcome == WebhookOutcome.DROPPED

    @pytest.mark.asyncio
    async def test_payment_failed_notifies_without_downgrade(
        self, processor, db_session, subscribed_user, mock_email, webhook_event
    ):
        outcome = await processor.process(webhook_event("invoice.payment_failed", _invoice()))

        assert outcome == WebhookOutcome.PROCESSED
        assert await _flag(db_session, subscribed_user.id) == EntitlementStatus.PREMIUM
        assert (await _record(db_session, subscribed_user.id)).status == "active"
        assert await _notification_count(db_session, subscribed_user.id) == 1
        mock_email.send_payment_failed_email.assert_awaited_once_with(
            to_email="premium@example.com",
            user_name="Premium User",
            amount_due="9.99 USD",
            invoice_url="https://invoice.stripe.test/in_1",
        )

    @pytest.mark.asyncio
    async def test_same_attempt_notified_once(
        self, processor, db_session, subscribed_user, mock_email, webhook_event
    ):
        """Scenario: the provider sends the same failure twice under different event ids."""
        await processor.process(webhook_event("invoice.payment_failed", _invoice()))
        await processor.process(webhook_event("invoice.payment_failed", _invoice()))

        assert await _notification_count(db_session, subscribed_user.id) == 1
        assert mock_email.send_payment_failed_email.await_count == 1

    @pytest.mark.asyncio
    async def test_each_retry_attempt_notified(
        self, processor, db_session, subscribed_user, mock_email, webhook_event
    ):
        await processor.process(webhook_event("invoice.payment_failed", _invoice(attempt_count=1)))
        await processor.process(webhook_event("invoice.payment_failed", _invoice(attempt_count=2)))

        assert await _notification_count(db_session, subscribed_user.id) == 2
        assert mock_email.send_payment_failed_email.await_count == 2

    @pytest.mark.asyncio
    async def test_identical_delivery_twice(
        self, processor, db_session, subscribed_user, mock_email, webhook_event
    ):
        envelope = webhook_event("invoice.payment_failed", _invoice(), event_id="evt_twice")

        assert await processor.process(envelope) == WebhookOutcome.PROCESSED
        assert await processor.process(envelope) == WebhookOutcome.DUPLICATE

        assert await _notification_count(db_session, subscribed_user.id) == 1
        assert mock_email.send_payment_failed_email.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_invoice_unknown_subscription_dropped(
        self, processor, db_session, subscribed_user, mock_email, webhook_event
    ):
        outcome = await processor.process(
            webhook_event("invoice.payment_failed", _invoice(subscription_id="sub_x"))
        )

        assert outcome == WebhookOutcome.DROPPED
        mock_email.send_payment_failed_email.assert_not_awaited()


class TestNotificationHelpers:
    def test_dedupe_key(self):
        assert payment_failed_dedupe_key("in_1", 3) == "invoice:in_1:attempt:3"

    def test_format_amount(self):
        assert format_amount(1999, "eur") == "19.99 EUR"
        assert format_amount(0, "usd") is None
        assert format_amount(500, None) is None
