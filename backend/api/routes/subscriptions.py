"""
Self-service subscription endpoints.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_current_user, get_database_dialect, get_reconciler
from api.middleware.rate_limit import RATE_LIMITS, limiter
from api.schemas.subscriptions import (
    CurrentSubscriptionResponse,
    SubscriptionCheckResponse,
    SubscriptionFixResponse,
    SubscriptionRecordResponse,
)
from core.domain.subscription import EntitlementStatus, entitlement_for
from infrastructure.database import get_db
from infrastructure.database.models.user import User
from services.entitlement_sync import EntitlementSyncError
from services.reconciliation import (
    ReconciliationResult,
    SubscriptionReconciler,
    UserNotFoundError,
)
from services.subscription_store import SubscriptionRecordStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


def to_fix_response(result: ReconciliationResult) -> SubscriptionFixResponse:
    return SubscriptionFixResponse(
        success=result.success,
        message=result.message,
        old_status=result.old_status.value,
        new_status=result.new_status.value,
        subscription_created=result.subscription_created,
        provider_error=result.provider_error,
    )


async def run_reconciliation(
    reconciler: SubscriptionReconciler, user_id: str
) -> SubscriptionFixResponse:
    """Reconcile one user, mapping service failures onto HTTP errors."""
    try:
        result = await reconciler.reconcile(user_id)
    except UserNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    except EntitlementSyncError as e:
        logger.error("Reconciliation for user %s could not write entitlement: %s", user_id, e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update subscription status",
        )
    return to_fix_response(result)


@router.get("/fix", response_model=SubscriptionFixResponse)
@limiter.limit(RATE_LIMITS["subscription_fix"])
async def fix_subscription(
    request: Request,
    current_user: Annotated[User, Depends(get_current_user)],
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    """Re-sync the caller's subscription and entitlement from the billing provider."""
    user_id = current_user.id
    logger.info("Self-service subscription repair requested by user %s", user_id)
    return await run_reconciliation(reconciler, user_id)


@router.get("/check", response_model=SubscriptionCheckResponse)
async def check_subscription(
    current_user: Annotated[User, Depends(get_current_user)],
    db: AsyncSession = Depends(get_db),
    dialect: str = Depends(get_database_dialect),
):
    """Report whether the caller's entitlement flag disagrees with their record."""
    if current_user.is_admin:
        return SubscriptionCheckResponse(
            user_id=current_user.id,
            current_status="ADMIN",
            has_active_subscription=True,
            has_mismatch=False,
            needs_fix=False,
            is_admin=True,
        )

    record = await SubscriptionRecordStore(db, dialect).get_by_user(current_user.id)
    record_status = record.status if record is not None else None
    current = EntitlementStatus(current_user.subscription_status)
    has_mismatch = current != entitlement_for(record_status)

    return SubscriptionCheckResponse(
        user_id=current_user.id,
        current_status=current.value,
        has_active_subscription=record is not None and record.is_active,
        has_mismatch=has_mismatch,
        needs_fix=has_mismatch,
        is_admin=False,
    )


@router.get("/current", response_model=CurrentSubscriptionResponse)
async def current_subscription(
    current_user: Annotated[User, Depends(get_current_user)],
    db: AsyncSession = Depends(get_db),
    dialect: str = Depends(get_database_dialect),
):
    """The caller's entitlement and local subscription record."""
    record = await SubscriptionRecordStore(db, dialect).get_by_user(current_user.id)
    return CurrentSubscriptionResponse(
        entitlement=EntitlementStatus(current_user.subscription_status).value,
        subscription=SubscriptionRecordResponse.model_validate(record) if record else None,
    )
