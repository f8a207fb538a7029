"""
Subscription record persistence.

All writes are single statements keyed on either the owning user or the
provider subscription id, so concurrent webhook deliveries never race on a
read-modify-write. Callers own the transaction and commit.
"""

import logging
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from core.domain.subscription import (
    SubscriptionPlan,
    SubscriptionSnapshot,
    SubscriptionStatus,
)
from infrastructure.config.settings import settings
from infrastructure.database.models import SubscriptionRecord, User

logger = logging.getLogger(__name__)

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "mysql": mysql.insert,
    "sqlite": sqlite.insert,
}


def dialect_insert(dialect: str, table: Any):
    """Dialect-specific INSERT that supports upsert clauses."""
    try:
        return _INSERT_BY_DIALECT[dialect](table)
    except KeyError:
        raise ValueError(f"Unsupported database dialect: {dialect!r}") from None


def _like_pattern(term: str) -> str:
    escaped = term.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def insert_ignore(dialect: str, table: Any, values: dict[str, Any]):
    """INSERT that silently skips rows violating a unique constraint."""
    stmt = dialect_insert(dialect, table).values(**values)
    if dialect == "mysql":
        return stmt.prefix_with("IGNORE")
    return stmt.on_conflict_do_nothing()


class SubscriptionRecordStore:
    """Reads and atomic writes for ``subscriptions`` rows."""

    def __init__(self, db: AsyncSession, dialect: str | None = None):
        self.db = db
        self.dialect = dialect or settings.database_dialect

    async def _reload(self, *criteria) -> Optional[SubscriptionRecord]:
        result = await self.db.execute(
            select(SubscriptionRecord)
            .where(*criteria)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_user(self, user_id: str) -> Optional[SubscriptionRecord]:
        return await self._reload(SubscriptionRecord.user_id == user_id)

    async def get_by_subscription_id(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        return await self._reload(SubscriptionRecord.external_subscription_id == subscription_id)

    async def get_by_customer_id(self, customer_id: str) -> Optional[SubscriptionRecord]:
        """Most recently touched record for a provider customer."""
        result = await self.db.execute(
            select(SubscriptionRecord)
            .where(SubscriptionRecord.external_customer_id == customer_id)
            .order_by(SubscriptionRecord.updated_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def get_by_id_or_subscription_id(
        self, identifier: str
    ) -> Optional[SubscriptionRecord]:
        """Look up by local record id or provider subscription id, with the owner loaded."""
        result = await self.db.execute(
            select(SubscriptionRecord)
            .options(selectinload(SubscriptionRecord.user))
            .where(
                or_(
                    SubscriptionRecord.id == identifier,
                    SubscriptionRecord.external_subscription_id == identifier,
                )
            )
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def upsert_for_user(
        self,
        user_id: str,
        *,
        customer_id: Optional[str],
        subscription_id: Optional[str],
        price_id: Optional[str],
        plan: SubscriptionPlan,
        status: SubscriptionStatus,
        current_period_end: Optional[datetime],
        cancel_at_period_end: bool,
    ) -> SubscriptionRecord:
        """Create or overwrite the user's record in one statement."""
        values = {
            "external_customer_id": customer_id,
            "external_subscription_id": subscription_id,
            "price_id": price_id,
            "plan": SubscriptionPlan(plan).value,
            "status": SubscriptionStatus(status).value,
            "current_period_end": current_period_end,
            "cancel_at_period_end": cancel_at_period_end,
        }
        stmt = dialect_insert(self.dialect, SubscriptionRecord).values(
            id=str(uuid4()), user_id=user_id, **values
        )
        changes = {**values, "updated_at": func.now()}
        if self.dialect == "mysql":
            stmt = stmt.on_duplicate_key_update(**changes)
        else:
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id"],
                set_=changes,
            )
        await self.db.execute(stmt)

        record = await self.get_by_user(user_id)
        logger.info(
            "Upserted subscription record for user %s (subscription=%s, status=%s)",
            user_id,
            subscription_id,
            values["status"],
        )
        return record

    async def upsert_from_snapshot(
        self,
        user_id: str,
        snapshot: SubscriptionSnapshot,
        plan: SubscriptionPlan,
        customer_id: Optional[str] = None,
        status: Optional[SubscriptionStatus] = None,
    ) -> SubscriptionRecord:
        return await self.upsert_for_user(
            user_id,
            customer_id=customer_id or snapshot.customer_id,
            subscription_id=snapshot.subscription_id,
            price_id=snapshot.price_id,
            plan=plan,
            status=status or snapshot.status,
            current_period_end=snapshot.current_period_end,
            cancel_at_period_end=snapshot.cancel_at_period_end,
        )

    async def _update_by_subscription_id(
        self, subscription_id: str, values: dict[str, Any]
    ) -> Optional[SubscriptionRecord]:
        result = await self.db.execute(
            update(SubscriptionRecord)
            .where(SubscriptionRecord.external_subscription_id == subscription_id)
            .values(**values, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            return None
        return await self.get_by_subscription_id(subscription_id)

    async def apply_snapshot(
        self, snapshot: SubscriptionSnapshot, plan: SubscriptionPlan
    ) -> Optional[SubscriptionRecord]:
        """Overwrite the record holding this subscription; None if no record does."""
        values = {
            "price_id": snapshot.price_id,
            "plan": SubscriptionPlan(plan).value,
            "status": snapshot.status.value,
            "current_period_end": snapshot.current_period_end,
            "cancel_at_period_end": snapshot.cancel_at_period_end,
        }
        if snapshot.customer_id:
            values["external_customer_id"] = snapshot.customer_id
        return await self._update_by_subscription_id(snapshot.subscription_id, values)

    async def mark_canceled(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        return await self._update_by_subscription_id(
            subscription_id,
            {
                "status": SubscriptionStatus.CANCELED.value,
                "cancel_at_period_end": False,
            },
        )

    async def mark_paid(
        self, subscription_id: str, current_period_end: Optional[datetime]
    ) -> Optional[SubscriptionRecord]:
        values: dict[str, Any] = {"status": SubscriptionStatus.ACTIVE.value}
        if current_period_end is not None:
            values["current_period_end"] = current_period_end
        return await self._update_by_subscription_id(subscription_id, values)

    async def create_placeholder(
        self, user_id: str, customer_id: Optional[str] = None
    ) -> SubscriptionRecord:
        """
        Insert a record with no provider subscription so the user can be
        followed up manually. Never overwrites an existing record.
        """
        stmt = insert_ignore(
            self.dialect,
            SubscriptionRecord,
            {
                "id": str(uuid4()),
                "user_id": user_id,
                "external_customer_id": customer_id,
                "external_subscription_id": None,
                "plan": SubscriptionPlan.MONTHLY.value,
                "status": SubscriptionStatus.INCOMPLETE.value,
                "cancel_at_period_end": False,
            },
        )
        await self.db.execute(stmt)
        logger.info("Created placeholder subscription record for user %s", user_id)
        return await self.get_by_user(user_id)

    async def list_records(
        self,
        page: int = 1,
        limit: int = 20,
        status: Optional[str] = None,
        search: Optional[str] = None,
    ) -> tuple[list[SubscriptionRecord], int]:
        """Paginated records with owners, newest first."""
        query = select(SubscriptionRecord).join(User, SubscriptionRecord.user_id == User.id)
        count_query = (
            select(func.count())
            .select_from(SubscriptionRecord)
            .join(User, SubscriptionRecord.user_id == User.id)
        )

        filters = []
        if status:
            filters.append(SubscriptionRecord.status == status)
        if search:
            pattern = _like_pattern(search)
            filters.append(
                or_(
                    func.lower(User.email).like(pattern, escape="\\"),
                    func.lower(User.name).like(pattern, escape="\\"),
                )
            )
        if filters:
            query = query.where(*filters)
            count_query = count_query.where(*filters)

        total = (await self.db.execute(count_query)).scalar_one()
        result = await self.db.execute(
            query.options(selectinload(SubscriptionRecord.user))
            .order_by(SubscriptionRecord.updated_at.desc(), SubscriptionRecord.id)
            .offset((page - 1) * limit)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all()), total
