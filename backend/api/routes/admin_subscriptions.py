"""
Admin subscription endpoints.
"""

import logging
import math
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from adapters.payments.stripe_adapter import StripeAdapter, StripeError
from api.deps_admin import get_current_admin_user
from api.dependencies import get_billing_provider, get_database_dialect, get_reconciler
from api.routes.subscriptions import run_reconciliation
from api.schemas.subscriptions import (
    AdminSubscriptionDetailResponse,
    AdminSubscriptionItem,
    AdminSubscriptionListResponse,
    ProviderSubscriptionResponse,
    SubscriptionFixResponse,
)
from core.domain.subscription import SubscriptionStatus
from infrastructure.database import get_db
from infrastructure.database.models.user import User
from services.reconciliation import SubscriptionReconciler
from services.subscription_store import SubscriptionRecordStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/subscriptions", tags=["Admin - Subscriptions"])


@router.get("", response_model=AdminSubscriptionListResponse)
async def list_subscriptions(
    admin_user: Annotated[User, Depends(get_current_admin_user)],
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: SubscriptionStatus | None = Query(None, alias="status"),
    search: str | None = Query(None, max_length=255),
    db: AsyncSession = Depends(get_db),
    dialect: str = Depends(get_database_dialect),
):
    """List subscription records with their owners."""
    records, total = await SubscriptionRecordStore(db, dialect).list_records(
        page=page,
        limit=limit,
        status=status_filter.value if status_filter else None,
        search=search.strip() if search else None,
    )
    return AdminSubscriptionListResponse(
        items=[AdminSubscriptionItem.model_validate(record) for record in records],
        total=total,
        page=page,
        limit=limit,
        pages=math.ceil(total / limit) if total else 0,
    )


@router.get("/{subscription_id}", response_model=AdminSubscriptionDetailResponse)
async def get_subscription_detail(
    subscription_id: str,
    admin_user: Annotated[User, Depends(get_current_admin_user)],
    db: AsyncSession = Depends(get_db),
    dialect: str = Depends(get_database_dialect),
    provider: StripeAdapter = Depends(get_billing_provider),
):
    """
    Local record (by record id or provider subscription id) merged with the
    provider's live view. Provider failures degrade to local data plus
    ``providerError``.
    """
    record = await SubscriptionRecordStore(db, dialect).get_by_id_or_subscription_id(
        subscription_id
    )
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscription not found",
        )

    response = AdminSubscriptionDetailResponse(
        subscription=AdminSubscriptionItem.model_validate(record),
    )

    if not record.external_subscription_id:
        response.provider_error = "Record has no billing provider subscription"
        return response

    try:
        details = await provider.get_subscription_details(record.external_subscription_id)
    except StripeError as e:
        logger.warning(
            "Could not load provider details for subscription %s: %s",
            record.external_subscription_id,
            e,
        )
        response.provider_error = str(e)
        return response

    live = ProviderSubscriptionResponse.model_validate(details)
    live.stripe_url = provider.subscription_dashboard_url(details.id)
    response.provider = live
    return response


@router.post("/users/{user_id}/reconcile", response_model=SubscriptionFixResponse)
async def reconcile_user_subscription(
    user_id: str,
    admin_user: Annotated[User, Depends(get_current_admin_user)],
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    """Run reconciliation for any user."""
    logger.info("Admin %s triggered reconciliation for user %s", admin_user.id, user_id)
    return await run_reconciliation(reconciler, user_id)
