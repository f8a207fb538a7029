"""API Routes."""

from fastapi import APIRouter

from .admin_subscriptions import router as admin_subscriptions_router
from .billing_webhooks import router as billing_webhooks_router
from .health import router as health_router
from .subscriptions import router as subscriptions_router

# Create main API router
api_router = APIRouter()

# Include route modules
api_router.include_router(health_router)
api_router.include_router(billing_webhooks_router)
api_router.include_router(subscriptions_router)
api_router.include_router(admin_subscriptions_router)
