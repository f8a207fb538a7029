"""
Billing webhook dispatcher.

Turns an authenticated provider envelope into a typed event, skips event ids
that were already handled, routes the event to its handler and records the
outcome. Handler exceptions propagate so the provider redelivers.
"""

import logging
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adapters.email.resend_adapter import ResendEmailService
from adapters.payments.stripe_adapter import StripeAdapter
from core.domain.billing_events import (
    BillingEvent,
    CheckoutCompleted,
    IgnoredEvent,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionChanged,
    SubscriptionDeleted,
    WebhookOutcome,
    parse_billing_event,
)
from infrastructure.config.settings import settings
from infrastructure.database.models import ProcessedWebhookEvent
from services.billing_handlers import BillingEventHandlers
from services.billing_notifications import BillingNotificationService
from services.entitlement_sync import EntitlementSynchronizer
from services.subscription_store import SubscriptionRecordStore, insert_ignore

logger = logging.getLogger(__name__)


class BillingWebhookProcessor:
    """Dispatches verified webhook envelopes to event handlers."""

    def __init__(
        self,
        db: AsyncSession,
        provider: StripeAdapter,
        dialect: str | None = None,
        email: ResendEmailService | None = None,
        synchronizer: EntitlementSynchronizer | None = None,
    ):
        self.db = db
        self.dialect = dialect or settings.database_dialect
        self.handlers = BillingEventHandlers(
            db=db,
            provider=provider,
            store=SubscriptionRecordStore(db, self.dialect),
            synchronizer=synchronizer or EntitlementSynchronizer(db, self.dialect),
            notifications=BillingNotificationService(db, email=email, dialect=self.dialect),
        )
        self._routes: dict[type, Callable[[Any], Awaitable[WebhookOutcome]]] = {
            CheckoutCompleted: self.handlers.handle_checkout_completed,
            SubscriptionChanged: self.handlers.handle_subscription_changed,
            SubscriptionDeleted: self.handlers.handle_subscription_deleted,
            InvoicePaid: self.handlers.handle_invoice_paid,
            InvoicePaymentFailed: self.handlers.handle_invoice_payment_failed,
        }

    async def process(self, envelope: dict[str, Any]) -> WebhookOutcome:
        """
        Handle one decoded webhook envelope.

        Raises:
            InvalidEventError: If the envelope is not a usable event
            Exception: Anything a handler raises; the caller must answer 5xx
        """
        event = parse_billing_event(envelope)
        log_extra = {"event_id": event.event_id, "event_type": envelope.get("type")}

        if isinstance(event, IgnoredEvent):
            logger.info("Ignoring unsupported event type %s", event.event_type, extra=log_extra)
            return WebhookOutcome.IGNORED

        if await self._already_processed(event.event_id):
            logger.info("Event %s already processed", event.event_id, extra=log_extra)
            return WebhookOutcome.DUPLICATE

        outcome = await self.dispatch(event)
        await self._mark_processed(event.event_id, envelope.get("type", ""), outcome)

        logger.info(
            "Webhook %s (%s) -> %s",
            event.event_id,
            envelope.get("type"),
            outcome,
            extra=log_extra,
        )
        return outcome

    async def dispatch(self, event: BillingEvent) -> WebhookOutcome:
        handler = self._routes[type(event)]
        return await handler(event)

    async def _already_processed(self, event_id: str) -> bool:
        found = await self.db.scalar(
            select(ProcessedWebhookEvent.id).where(ProcessedWebhookEvent.id == event_id)
        )
        return found is not None

    async def _mark_processed(
        self, event_id: str, event_type: str, outcome: WebhookOutcome
    ) -> None:
        await self.db.execute(
            insert_ignore(
                self.dialect,
                ProcessedWebhookEvent,
                {"id": event_id, "event_type": event_type, "outcome": outcome.value},
            )
        )
        await self.db.commit()
