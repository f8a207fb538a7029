"""Payment failure notifications (in-app and email)."""

import logging
from typing import Optional
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from adapters.email.resend_adapter import ResendEmailService, email_service
from infrastructure.config.settings import settings
from infrastructure.database.models import (
    Notification,
    NotificationStatus,
    NotificationType,
    User,
)
from services.subscription_store import insert_ignore

logger = logging.getLogger(__name__)

PAYMENT_FAILED_TITLE = "Payment Failed"
PAYMENT_FAILED_MESSAGE = (
    "Your subscription payment has failed. "
    "Please update your payment method to continue your subscription."
)


def payment_failed_dedupe_key(invoice_id: str, attempt_count: int) -> str:
    return f"invoice:{invoice_id}:attempt:{attempt_count}"


def format_amount(amount_minor: int, currency: Optional[str]) -> Optional[str]:
    if not amount_minor or not currency:
        return None
    return f"{amount_minor / 100:.2f} {currency.upper()}"


class BillingNotificationService:
    """Creates payment-failure notifications at most once per invoice attempt."""

    def __init__(
        self,
        db: AsyncSession,
        email: ResendEmailService | None = None,
        dialect: str | None = None,
    ):
        self.db = db
        self.email = email or email_service
        self.dialect = dialect or settings.database_dialect

    async def record_payment_failed(
        self, user_id: str, invoice_id: str, attempt_count: int
    ) -> bool:
        """
        Insert the in-app notification.

        Returns:
            True if a new notification was created, False if this invoice
            attempt was already notified
        """
        stmt = insert_ignore(
            self.dialect,
            Notification,
            {
                "id": str(uuid4()),
                "user_id": user_id,
                "type": NotificationType.PAYMENT_FAILED.value,
                "title": PAYMENT_FAILED_TITLE,
                "message": PAYMENT_FAILED_MESSAGE,
                "status": NotificationStatus.UNREAD.value,
                "dedupe_key": payment_failed_dedupe_key(invoice_id, attempt_count),
            },
        )
        result = await self.db.execute(stmt)
        created = bool(result.rowcount)
        if not created:
            logger.info(
                "Payment failure for invoice %s attempt %d already notified",
                invoice_id,
                attempt_count,
            )
        return created

    async def send_payment_failed_email(
        self,
        user: User,
        amount_due: int = 0,
        currency: Optional[str] = None,
        invoice_url: Optional[str] = None,
    ) -> bool:
        sent = await self.email.send_payment_failed_email(
            to_email=user.email,
            user_name=user.name,
            amount_due=format_amount(amount_due, currency),
            invoice_url=invoice_url,
        )
        if not sent:
            logger.warning("Payment failed email not delivered to user %s", user.id)
        return sent
