"""
Entitlement flag synchronizer.

Writes ``users.subscription_status`` and does not return until the stored
value has been read back and matches. The write path is a small state
machine::

    TYPED_WRITE --ok--> VERIFY --match--> CONVERGED
    TYPED_WRITE --error--> RAW_WRITE --> VERIFY
    VERIFY --mismatch--> FORCED_WRITE --> VERIFY --mismatch--> INCONSISTENT

Raw and forced writes go straight to the storage engine with a parameterized
statement for the configured dialect, retried with exponential backoff.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Optional

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.domain.subscription import EntitlementStatus
from infrastructure.config.settings import settings
from infrastructure.database.models import ENTITLEMENT_ENUM_NAME, User

logger = logging.getLogger(__name__)

# Bound values only; PostgreSQL needs an explicit cast to the native enum type
_RAW_UPDATE_SQL = {
    "postgresql": (
        "UPDATE users "
        f"SET subscription_status = CAST(:status AS {ENTITLEMENT_ENUM_NAME}), "
        "updated_at = CURRENT_TIMESTAMP "
        "WHERE id = :user_id"
    ),
    "mysql": (
        "UPDATE users "
        "SET subscription_status = :status, updated_at = CURRENT_TIMESTAMP "
        "WHERE id = :user_id"
    ),
}
_RAW_UPDATE_SQL["sqlite"] = _RAW_UPDATE_SQL["mysql"]


class SyncState(StrEnum):
    TYPED_WRITE = "typed_write"
    RAW_WRITE = "raw_write"
    VERIFY = "verify"
    FORCED_WRITE = "forced_write"
    CONVERGED = "converged"
    INCONSISTENT = "inconsistent"


@dataclass
class SyncResult:
    """Outcome of one synchronization."""

    user_id: str
    target: EntitlementStatus
    state: SyncState = SyncState.TYPED_WRITE
    path: list[SyncState] = field(default_factory=list)
    write_attempts: int = 0
    observed: Optional[EntitlementStatus] = None

    @property
    def converged(self) -> bool:
        return self.state == SyncState.CONVERGED


class EntitlementSyncError(Exception):
    """Raised when the flag cannot be made to match its target."""

    def __init__(self, result: SyncResult):
        super().__init__(
            f"Entitlement for user {result.user_id} stuck at {result.observed} "
            f"(target {result.target}) after {result.write_attempts} writes"
        )
        self.result = result


class EntitlementSynchronizer:
    """Sole writer of the user entitlement flag."""

    def __init__(
        self,
        db: AsyncSession,
        dialect: str | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
    ):
        self.db = db
        self.dialect = dialect or settings.database_dialect
        if self.dialect not in _RAW_UPDATE_SQL:
            raise ValueError(f"Unsupported database dialect: {self.dialect!r}")
        self.max_attempts = max(1, max_attempts or settings.entitlement_sync_max_attempts)
        self.backoff_seconds = (
            backoff_seconds
            if backoff_seconds is not None
            else settings.entitlement_sync_backoff_seconds
        )

    async def sync(self, user_id: str, target: EntitlementStatus | str) -> SyncResult:
        """
        Make the stored flag equal ``target``.

        Returns:
            A converged SyncResult

        Raises:
            EntitlementSyncError: If the flag still disagrees after the forced
                write, or the storage engine kept rejecting writes
        """
        result = SyncResult(user_id=user_id, target=EntitlementStatus(target))
        state = SyncState.TYPED_WRITE

        while True:
            result.path.append(state)
            result.state = state

            if state == SyncState.TYPED_WRITE:
                result.write_attempts += 1
                try:
                    await self._typed_write(user_id, result.target)
                    state = SyncState.VERIFY
                except SQLAlchemyError as e:
                    logger.warning(
                        "Typed entitlement write failed for user %s, using raw write: %s",
                        user_id,
                        e,
                    )
                    await self.db.rollback()
                    state = SyncState.RAW_WRITE

            elif state in (SyncState.RAW_WRITE, SyncState.FORCED_WRITE):
                if await self._raw_write_with_retry(user_id, result):
                    state = SyncState.VERIFY
                else:
                    state = SyncState.INCONSISTENT

            elif state == SyncState.VERIFY:
                result.observed = await self._read(user_id)
                if result.observed == result.target:
                    state = SyncState.CONVERGED
                elif SyncState.FORCED_WRITE in result.path:
                    state = SyncState.INCONSISTENT
                else:
                    logger.warning(
                        "Entitlement for user %s reads %s after write, forcing %s",
                        user_id,
                        result.observed,
                        result.target,
                    )
                    state = SyncState.FORCED_WRITE

            elif state == SyncState.CONVERGED:
                logger.info(
                    "Entitlement for user %s set to %s via %s",
                    user_id,
                    result.target,
                    " -> ".join(result.path),
                    extra={"user_id": user_id},
                )
                return result

            else:
                logger.critical(
                    "ENTITLEMENT INCONSISTENT: user %s flag is %s but should be %s "
                    "(path: %s, writes: %d)",
                    user_id,
                    result.observed,
                    result.target,
                    " -> ".join(result.path),
                    result.write_attempts,
                    extra={"user_id": user_id},
                )
                raise EntitlementSyncError(result)

    async def _typed_write(self, user_id: str, target: EntitlementStatus) -> None:
        await self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(subscription_status=target, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def _raw_write(self, user_id: str, target: EntitlementStatus) -> None:
        await self.db.execute(
            text(_RAW_UPDATE_SQL[self.dialect]),
            {"status": target.value, "user_id": user_id},
        )
        await self.db.commit()

    async def _raw_write_with_retry(self, user_id: str, result: SyncResult) -> bool:
        """Bounded retries with exponential backoff; False once attempts run out."""
        for attempt in range(1, self.max_attempts + 1):
            result.write_attempts += 1
            try:
                await self._raw_write(user_id, result.target)
                return True
            except SQLAlchemyError as e:
                await self.db.rollback()
                logger.error(
                    "Raw entitlement write %d/%d failed for user %s: %s",
                    attempt,
                    self.max_attempts,
                    user_id,
                    e,
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.backoff_seconds * 2 ** (attempt - 1))
        return False

    async def _read(self, user_id: str) -> Optional[EntitlementStatus]:
        value = await self.db.scalar(select(User.subscription_status).where(User.id == user_id))
        return EntitlementStatus(value) if value is not None else None
