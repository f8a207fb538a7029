"""
Resend email service adapter.
"""

import html
import logging
from typing import Optional

import resend

from infrastructure.config.settings import settings

logger = logging.getLogger(__name__)


class ResendEmailService:
    """Email service using Resend API."""

    def __init__(self):
        if settings.resend_api_key:
            resend.api_key = settings.resend_api_key
        self._from_email = settings.resend_from_email
        self._frontend_url = settings.frontend_url

    async def send_payment_failed_email(
        self,
        to_email: str,
        user_name: str,
        amount_due: Optional[str] = None,
        invoice_url: Optional[str] = None,
    ) -> bool:
        """
        Tell a user their subscription payment failed.

        Args:
            to_email: Recipient email address
            user_name: User's name for personalization
            amount_due: Formatted amount, e.g. "9.99 USD"
            invoice_url: Provider-hosted invoice page, if available

        Returns:
            True if sent (or logged in development), False otherwise
        """
        action_url = invoice_url or f"{self._frontend_url}/settings/billing"

        if not settings.resend_api_key:
            logger.info("[DEV] Payment failed email for %s: %s", to_email, action_url)
            return True

        try:
            resend.Emails.send({
                "from": self._from_email,
                "to": to_email,
                "subject": "Your subscription payment failed",
                "html": self._get_payment_failed_email_html(user_name, amount_due, action_url),
            })
            return True
        except Exception as e:
            logger.error("Failed to send payment failed email to %s: %s", to_email, e)
            return False

    def _get_payment_failed_email_html(
        self,
        user_name: str,
        amount_due: Optional[str],
        action_url: str,
    ) -> str:
        """Generate payment failed email HTML."""
        amount_line = (
            f"We couldn't collect your payment of <strong>{html.escape(amount_due)}</strong>."
            if amount_due
            else "We couldn't collect your latest subscription payment."
        )
        return f"""
        <!DOCTYPE html>
        <html>
        <head>
            <meta charset="utf-8">
            <meta name="viewport" content="width=device-width, initial-scale=1.0">
        </head>
        <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background-color: #F7F7FA; padding: 40px 20px;">
            <div style="max-width: 560px; margin: 0 auto; background: white; border-radius: 16px; padding: 40px;">
                <h2 style="color: #1A1A2E; font-size: 20px; margin-bottom: 16px;">Payment failed</h2>

                <p style="color: #4A4A68; line-height: 1.6; margin-bottom: 24px;">
                    Hi {html.escape(user_name)},<br><br>
                    {amount_line}
                    Please update your payment method to continue your subscription.
                </p>

                <div style="text-align: center; margin: 32px 0;">
                    <a href="{html.escape(action_url)}" style="display: inline-block; background: #1A1A2E; color: white; text-decoration: none; padding: 14px 32px; border-radius: 12px; font-weight: 500;">
                        Update payment method
                    </a>
                </div>

                <p style="color: #8B8BA7; font-size: 14px; line-height: 1.6;">
                    We will retry the payment automatically over the next few days.
                </p>
            </div>
        </body>
        </html>
        """


# Singleton instance
email_service = ResendEmailService()
