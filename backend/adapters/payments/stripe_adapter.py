"""
Stripe billing adapter for subscription lookups and webhook verification.

Talks to the Stripe REST API directly over httpx. Only read operations are
needed: the service never creates charges or mutates provider state.
"""

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import httpx

from core.domain.subscription import SubscriptionSnapshot, timestamp_to_datetime
from infrastructure.config.settings import settings

logger = logging.getLogger(__name__)


# Custom Exceptions
class StripeError(Exception):
    """Base exception for Stripe adapter errors."""

    pass


class StripeAPIError(StripeError):
    """Raised when the Stripe API returns an error or cannot be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class StripeNotFoundError(StripeAPIError):
    """Raised when the requested Stripe object does not exist."""

    pass


class StripeAuthError(StripeError):
    """Raised when API authentication fails or no key is configured."""

    pass


class StripeWebhookError(StripeError):
    """Raised when webhook verification or decoding fails."""

    pass


def _id_of(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("id")
    return value


# Dataclasses
@dataclass
class StripeCustomer:
    """Stripe customer information."""

    id: str
    email: Optional[str]
    name: Optional[str]
    created: Optional[datetime]

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "StripeCustomer":
        """Create customer from API response data."""
        return cls(
            id=data.get("id", ""),
            email=data.get("email"),
            name=data.get("name"),
            created=timestamp_to_datetime(data.get("created")),
        )


@dataclass
class StripeProductDetails:
    """Price and product behind a subscription's first item."""

    price_id: Optional[str]
    product_id: Optional[str]
    name: Optional[str]
    description: Optional[str]
    amount: Optional[float]
    currency: Optional[str]
    interval: Optional[str]
    interval_count: Optional[int]

    @classmethod
    def from_api_response(cls, price: dict[str, Any]) -> "StripeProductDetails":
        product = price.get("product")
        product_data = product if isinstance(product, dict) else {}
        recurring = price.get("recurring") or {}
        unit_amount = price.get("unit_amount")
        return cls(
            price_id=price.get("id"),
            product_id=_id_of(product),
            name=product_data.get("name") or price.get("nickname"),
            description=product_data.get("description"),
            amount=unit_amount / 100 if unit_amount is not None else None,
            currency=price.get("currency"),
            interval=recurring.get("interval"),
            interval_count=recurring.get("interval_count"),
        )


@dataclass
class StripePaymentMethod:
    """Card summary of the subscription's default payment method."""

    id: str
    type: Optional[str]
    last4: Optional[str]
    brand: Optional[str]
    exp_month: Optional[int]
    exp_year: Optional[int]

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "StripePaymentMethod":
        card = data.get("card") or {}
        return cls(
            id=data.get("id", ""),
            type=data.get("type"),
            last4=card.get("last4"),
            brand=card.get("brand"),
            exp_month=card.get("exp_month"),
            exp_year=card.get("exp_year"),
        )


@dataclass
class StripeInvoiceSummary:
    """The subscription's most recent invoice."""

    id: str
    number: Optional[str]
    status: Optional[str]
    amount_paid: float
    amount_due: float
    currency: Optional[str]
    created: Optional[datetime]
    hosted_invoice_url: Optional[str]

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "StripeInvoiceSummary":
        return cls(
            id=data.get("id", ""),
            number=data.get("number"),
            status=data.get("status"),
            amount_paid=(data.get("amount_paid") or 0) / 100,
            amount_due=(data.get("amount_due") or 0) / 100,
            currency=data.get("currency"),
            created=timestamp_to_datetime(data.get("created")),
            hosted_invoice_url=data.get("hosted_invoice_url"),
        )


@dataclass
class StripeSubscriptionDetails:
    """Expanded view of a subscription for administrative display."""

    id: str
    status: str
    customer_id: Optional[str]
    customer_email: Optional[str]
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    cancel_at: Optional[datetime]
    canceled_at: Optional[datetime]
    start_date: Optional[datetime]
    trial_start: Optional[datetime]
    trial_end: Optional[datetime]
    product: Optional[StripeProductDetails]
    payment_method: Optional[StripePaymentMethod]
    latest_invoice: Optional[StripeInvoiceSummary]

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "StripeSubscriptionDetails":
        """Create details from a subscription retrieved with expansions."""
        items = (data.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price")

        customer = data.get("customer")
        payment_method = data.get("default_payment_method")
        invoice = data.get("latest_invoice")

        period_start = data.get("current_period_start", first_item.get("current_period_start"))
        period_end = data.get("current_period_end", first_item.get("current_period_end"))

        return cls(
            id=data.get("id", ""),
            status=data.get("status", ""),
            customer_id=_id_of(customer),
            customer_email=customer.get("email") if isinstance(customer, dict) else None,
            current_period_start=timestamp_to_datetime(period_start),
            current_period_end=timestamp_to_datetime(period_end),
            cancel_at_period_end=bool(data.get("cancel_at_period_end", False)),
            cancel_at=timestamp_to_datetime(data.get("cancel_at")),
            canceled_at=timestamp_to_datetime(data.get("canceled_at")),
            start_date=timestamp_to_datetime(data.get("start_date")),
            trial_start=timestamp_to_datetime(data.get("trial_start")),
            trial_end=timestamp_to_datetime(data.get("trial_end")),
            product=StripeProductDetails.from_api_response(price) if price else None,
            payment_method=StripePaymentMethod.from_api_response(payment_method)
            if isinstance(payment_method, dict)
            else None,
            latest_invoice=StripeInvoiceSummary.from_api_response(invoice)
            if isinstance(invoice, dict)
            else None,
        )


class StripeAdapter:
    """
    Stripe API adapter for subscription billing.

    Provides read access to customers and subscriptions plus verification
    of signed webhook deliveries.
    """

    API_BASE_URL = "https://api.stripe.com/v1"
    DETAIL_EXPANSIONS = (
        "latest_invoice",
        "customer",
        "default_payment_method",
        "items.data.price.product",
    )

    def __init__(
        self,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        api_base_url: str | None = None,
        webhook_tolerance_seconds: int | None = None,
    ):
        """
        Initialize Stripe adapter.

        Args:
            api_key: Stripe secret key (defaults to settings)
            webhook_secret: Webhook endpoint signing secret (defaults to settings)
            api_base_url: API root (defaults to settings)
            webhook_tolerance_seconds: Max signature age (defaults to settings)
        """
        self.api_key = api_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self.api_base_url = (api_base_url or settings.stripe_api_base or self.API_BASE_URL).rstrip(
            "/"
        )
        self.webhook_tolerance_seconds = (
            webhook_tolerance_seconds
            if webhook_tolerance_seconds is not None
            else settings.stripe_webhook_tolerance_seconds
        )

        if not self.api_key:
            logger.warning("Stripe API key not configured. Set STRIPE_SECRET_KEY.")

    def _get_headers(self) -> dict[str, str]:
        """Get HTTP headers for API requests."""
        if not self.api_key:
            raise StripeAuthError("Stripe API key not configured. Set STRIPE_SECRET_KEY.")

        return {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        params: list[tuple[str, str]] | None = None,
    ) -> dict[str, Any]:
        """
        Make HTTP request to the Stripe API.

        Args:
            method: HTTP method
            endpoint: API endpoint path
            params: Query parameters (repeated keys allowed, e.g. ``expand[]``)

        Returns:
            API response as dictionary

        Raises:
            StripeAuthError: If the key is missing or rejected
            StripeNotFoundError: If the object does not exist
            StripeAPIError: If the request fails for any other reason
        """
        url = f"{self.api_base_url}/{endpoint}"
        headers = self._get_headers()

        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                logger.debug("Stripe %s %s", method, endpoint)
                response = await client.request(method, url, headers=headers, params=params)
                response.raise_for_status()
                return response.json()

        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            try:
                error_detail = e.response.json().get("error", {}).get("message") or str(e)
            except ValueError:
                error_detail = str(e)

            if status_code == 401:
                logger.error("Stripe rejected API key: %s", error_detail)
                raise StripeAuthError(f"Authentication failed: {error_detail}") from e
            if status_code == 404:
                raise StripeNotFoundError(f"Not found: {error_detail}", status_code) from e

            logger.error("Stripe API error (%s): %s", status_code, error_detail)
            raise StripeAPIError(f"API request failed: {error_detail}", status_code) from e
        except httpx.RequestError as e:
            logger.error("Stripe request error: %s", e)
            raise StripeAPIError(f"Request failed: {e}") from e

    async def get_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        """
        Get the current state of a subscription.

        Raises:
            StripeNotFoundError: If the provider does not know the subscription
            StripeAPIError: If the API request fails
        """
        data = await self._make_request("GET", f"subscriptions/{subscription_id}")
        return SubscriptionSnapshot.from_provider_object(data)

    async def list_subscriptions(
        self,
        customer_id: str,
        status: str = "active",
        limit: int = 1,
    ) -> list[SubscriptionSnapshot]:
        """List a customer's subscriptions with the given status."""
        params = [("customer", customer_id), ("status", status), ("limit", str(limit))]
        response = await self._make_request("GET", "subscriptions", params=params)
        return [
            SubscriptionSnapshot.from_provider_object(item) for item in response.get("data", [])
        ]

    async def find_customer_by_email(self, email: str) -> Optional[StripeCustomer]:
        """Return the first customer with this email, if any."""
        response = await self._make_request(
            "GET", "customers", params=[("email", email), ("limit", "1")]
        )
        customers = response.get("data", [])
        if not customers:
            return None
        return StripeCustomer.from_api_response(customers[0])

    async def get_subscription_details(self, subscription_id: str) -> StripeSubscriptionDetails:
        """Retrieve a subscription with product, payment method and invoice expanded."""
        params = [("expand[]", path) for path in self.DETAIL_EXPANSIONS]
        data = await self._make_request("GET", f"subscriptions/{subscription_id}", params=params)
        return StripeSubscriptionDetails.from_api_response(data)

    def subscription_dashboard_url(self, subscription_id: str) -> str:
        mode = "test/" if (self.api_key or "").startswith("sk_test_") else ""
        return f"{settings.stripe_dashboard_url.rstrip('/')}/{mode}subscriptions/{subscription_id}"

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature_header: str | None,
        now: float | None = None,
    ) -> bool:
        """
        Verify a ``Stripe-Signature`` header against the raw payload.

        The header carries ``t=<unix seconds>`` and one or more ``v1=<hex>``
        entries; each v1 is an HMAC-SHA256 of ``"<t>.<payload>"``.

        Returns:
            True if any v1 signature matches and the timestamp is within tolerance

        Raises:
            StripeWebhookError: If webhook secret not configured
        """
        if not self.webhook_secret:
            raise StripeWebhookError("Webhook secret not configured. Set STRIPE_WEBHOOK_SECRET.")

        if not signature_header:
            logger.warning("Webhook rejected: missing signature header")
            return False

        timestamp = None
        signatures = []
        for part in signature_header.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1" and value:
                signatures.append(value)

        try:
            signed_at = int(timestamp) if timestamp is not None else None
        except ValueError:
            signed_at = None

        if signed_at is None or not signatures:
            logger.warning("Webhook rejected: malformed signature header")
            return False

        current = time.time() if now is None else now
        if abs(current - signed_at) > self.webhook_tolerance_seconds:
            logger.warning("Webhook rejected: timestamp %s outside tolerance", signed_at)
            return False

        signed_payload = f"{signed_at}.".encode("utf-8") + payload
        expected = hmac.new(
            key=self.webhook_secret.encode("utf-8"),
            msg=signed_payload,
            digestmod=hashlib.sha256,
        ).hexdigest()

        if any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            return True

        logger.warning("Webhook rejected: signature mismatch")
        return False

    def construct_event(self, payload: bytes, signature_header: str | None) -> dict[str, Any]:
        """
        Verify and decode a webhook delivery.

        Raises:
            StripeWebhookError: If the secret is missing, the signature is
                invalid, or the body is not a JSON object
        """
        if not self.verify_webhook_signature(payload, signature_header):
            raise StripeWebhookError("Invalid webhook signature")

        try:
            event = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StripeWebhookError(f"Invalid JSON payload: {e}") from e

        if not isinstance(event, dict):
            raise StripeWebhookError("Webhook payload is not a JSON object")
        return event


# Factory function for easy instantiation
def create_stripe_adapter(
    api_key: str | None = None,
    webhook_secret: str | None = None,
) -> StripeAdapter:
    """Create a Stripe adapter instance with settings defaults."""
    return StripeAdapter(api_key=api_key, webhook_secret=webhook_secret)
