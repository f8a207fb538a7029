"""
Rate limiting middleware using slowapi.

Limits are keyed on the client IP. Storage defaults to in-process memory;
set RATE_LIMIT_STORAGE_URI (e.g. a Redis URL) for multi-worker deployments.

Rate Limits:
- Billing webhooks: 100 requests per minute
- Self-service subscription repair: 10 requests per minute
- Default: 100 requests per minute
"""

import ipaddress
import logging
import re

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from infrastructure.config.settings import settings

logger = logging.getLogger(__name__)

# Quick reject of values that cannot be IPs before parsing
_IP_LIKE = re.compile(r"^[\d.:a-fA-F]+$")


def _is_public_ip(value: str) -> bool:
    """True for a syntactically valid, non-private, non-loopback address.

    Private addresses in X-Forwarded-For are ignored since a client can
    spoof them to share someone else's bucket.
    """
    if not _IP_LIKE.match(value):
        return False
    try:
        addr = ipaddress.ip_address(value)
    except ValueError:
        return False
    return not (addr.is_private or addr.is_loopback or addr.is_link_local)


def _get_real_ip(request: Request) -> str:
    """Extract real client IP from proxy headers, falling back to remote address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",")[0].strip()
        if _is_public_ip(candidate):
            return candidate
    real_ip = request.headers.get("x-real-ip")
    if real_ip and _is_public_ip(real_ip.strip()):
        return real_ip.strip()
    return get_remote_address(request)


# Format: "count/period" where period can be: second, minute, hour, day
RATE_LIMITS = {
    "webhook": "100/minute",
    "subscription_fix": "10/minute",
    "default": "100/minute",
}

if settings.rate_limit_storage_uri.startswith("memory://") and settings.is_production:
    logger.warning(
        "Rate limiter using in-memory storage; limits are per worker process"
    )

limiter = Limiter(
    key_func=_get_real_ip,
    storage_uri=settings.rate_limit_storage_uri,
    default_limits=[RATE_LIMITS["default"]],
)
