"""
API dependencies for authentication and service wiring.
"""

from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adapters.payments.stripe_adapter import StripeAdapter, create_stripe_adapter
from core.security import TokenService
from infrastructure.config import get_settings
from infrastructure.database import get_db
from infrastructure.database.models.user import User
from services.billing_webhooks import BillingWebhookProcessor
from services.reconciliation import SubscriptionReconciler

settings = get_settings()

token_service = TokenService(
    secret_key=settings.jwt_secret_key,
    algorithm=settings.jwt_algorithm,
    access_token_expire_minutes=settings.jwt_access_token_expire_minutes,
)


@lru_cache
def get_billing_provider() -> StripeAdapter:
    """Shared provider adapter; overridden in tests."""
    return create_stripe_adapter()


def get_database_dialect() -> str:
    """SQL dialect fixed by configuration at startup."""
    return settings.database_dialect


async def get_current_user(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Dependency to get the current authenticated user.

    Checks the Authorization header first (Bearer token), then the
    ``access_token`` cookie set by the web app.
    """
    token = None
    if authorization and authorization.startswith("Bearer "):
        parts = authorization.split(" ", 1)
        token = parts[1] if len(parts) > 1 and parts[1] else None

    if not token:
        token = request.cookies.get("access_token")

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = token_service.verify_access_token(token)

    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    result = await db.execute(select(User).where(User.id == payload.sub))
    user = result.scalar_one_or_none()

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is not active",
        )

    return user


def get_webhook_processor(
    db: AsyncSession = Depends(get_db),
    provider: StripeAdapter = Depends(get_billing_provider),
    dialect: str = Depends(get_database_dialect),
) -> BillingWebhookProcessor:
    return BillingWebhookProcessor(db, provider, dialect=dialect)


def get_reconciler(
    db: AsyncSession = Depends(get_db),
    provider: StripeAdapter = Depends(get_billing_provider),
    dialect: str = Depends(get_database_dialect),
) -> SubscriptionReconciler:
    return SubscriptionReconciler(db, provider, dialect=dialect)
