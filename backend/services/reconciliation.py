"""
On-demand subscription reconciliation.

Re-derives a user's subscription record from the billing provider and forces
the entitlement flag to match. This repairs users whose webhooks were lost;
webhooks remain the primary path.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adapters.payments.stripe_adapter import StripeAdapter, StripeError, StripeNotFoundError
from core.domain.subscription import EntitlementStatus, entitlement_for
from infrastructure.config.settings import settings
from infrastructure.database.models import SubscriptionRecord, User
from services.billing_handlers import plan_for
from services.entitlement_sync import EntitlementSynchronizer, SyncState
from services.subscription_store import SubscriptionRecordStore

logger = logging.getLogger(__name__)


class UserNotFoundError(Exception):
    """Raised when reconciliation targets a user that does not exist."""

    pass


@dataclass
class ReconciliationResult:
    user_id: str
    old_status: EntitlementStatus
    new_status: EntitlementStatus
    subscription_created: bool
    record_status: Optional[str]
    provider_error: Optional[str] = None
    sync_state: Optional[SyncState] = None

    @property
    def success(self) -> bool:
        """The flag write converged on the entitlement of the record."""
        return self.sync_state == SyncState.CONVERGED

    @property
    def message(self) -> str:
        if self.provider_error:
            return "Billing provider unavailable; entitlement synced from local data"
        if self.old_status == self.new_status:
            return f"Subscription status already {self.new_status}"
        return f"Subscription status updated from {self.old_status} to {self.new_status}"


class SubscriptionReconciler:
    """Pull-based repair of one user's subscription state."""

    def __init__(
        self,
        db: AsyncSession,
        provider: StripeAdapter,
        dialect: str | None = None,
        synchronizer: EntitlementSynchronizer | None = None,
    ):
        self.db = db
        self.provider = provider
        dialect = dialect or settings.database_dialect
        self.store = SubscriptionRecordStore(db, dialect)
        self.synchronizer = synchronizer or EntitlementSynchronizer(db, dialect)

    async def reconcile(self, user_id: str) -> ReconciliationResult:
        """
        Bring the user's record and flag in line with the provider.

        Raises:
            UserNotFoundError: If the user does not exist
            EntitlementSyncError: If the flag write cannot converge
        """
        result = await self.db.execute(
            select(User).where(User.id == user_id).execution_options(populate_existing=True)
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")

        old_status = EntitlementStatus(user.subscription_status)
        email = user.email
        record = await self.store.get_by_user(user_id)

        created = False
        provider_error = None
        try:
            record, created = await self._repair_record(user_id, email, record)
        except StripeError as e:
            logger.warning(
                "Provider unreachable while reconciling user %s, using local data: %s",
                user_id,
                e,
            )
            provider_error = str(e)

        record_status = record.status if record is not None else None
        sync = await self.synchronizer.sync(user_id, entitlement_for(record_status))

        logger.info(
            "Reconciled user %s: %s -> %s (record=%s, created=%s)",
            user_id,
            old_status,
            sync.target,
            record_status,
            created,
            extra={"user_id": user_id},
        )
        return ReconciliationResult(
            user_id=user_id,
            old_status=old_status,
            new_status=sync.target,
            subscription_created=created,
            record_status=record_status,
            provider_error=provider_error,
            sync_state=sync.state,
        )

    async def _repair_record(
        self,
        user_id: str,
        email: str,
        record: Optional[SubscriptionRecord],
    ) -> tuple[Optional[SubscriptionRecord], bool]:
        """All provider reads happen before the first write."""
        customer_id = record.external_customer_id if record is not None else None
        active = []
        if customer_id:
            active = await self.provider.list_subscriptions(customer_id, status="active", limit=1)

        # A re-subscription through checkout can land on a new customer for the same email
        if not active:
            customer = await self.provider.find_customer_by_email(email)
            if customer is not None and customer.id != customer_id:
                active = await self.provider.list_subscriptions(
                    customer.id, status="active", limit=1
                )
                if active or not customer_id:
                    if customer_id:
                        logger.info(
                            "User %s resubscribed under customer %s (was %s)",
                            user_id,
                            customer.id,
                            customer_id,
                        )
                    customer_id = customer.id

        if active:
            snapshot = active[0]
            was_missing = record is None or record.is_placeholder
            repaired = await self.store.upsert_from_snapshot(
                user_id, snapshot, plan_for(snapshot), customer_id=customer_id
            )
            await self.db.commit()
            return repaired, was_missing

        if record is not None and record.external_subscription_id:
            subscription_id = record.external_subscription_id
            try:
                snapshot = await self.provider.get_subscription(subscription_id)
            except StripeNotFoundError:
                logger.info("Subscription %s no longer exists at the provider", subscription_id)
                repaired = await self.store.mark_canceled(subscription_id)
            else:
                repaired = await self.store.apply_snapshot(snapshot, plan_for(snapshot))
            await self.db.commit()
            return repaired or record, False

        if record is None:
            logger.warning(
                "No active provider subscription for user %s, creating placeholder record",
                user_id,
            )
            placeholder = await self.store.create_placeholder(user_id, customer_id)
            await self.db.commit()
            return placeholder, True

        return record, False
