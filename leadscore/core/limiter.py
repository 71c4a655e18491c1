"""
Rate Limiting Module
Uses slowapi (Token Bucket) to protect API endpoints from abuse.
"""
import logging
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request
from leadscore.core.config import settings

logger = logging.getLogger(__name__)


def account_or_address(request: Request) -> str:
    """Limit per account when the header is present, else per client IP."""
    return request.headers.get("X-Account-Id") or get_remote_address(request)


limiter = Limiter(
    key_func=account_or_address,
    enabled=settings.RATE_LIMIT_ENABLED,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
)

# Endpoint-specific limits (importable constants)
SUBMIT_LIMIT = "30/minute"
STATUS_LIMIT = "120/minute"
CANCEL_LIMIT = "30/minute"
RESULT_LIMIT = "60/minute"
CREDITS_LIMIT = "60/minute"

logger.info(f"Rate limiting {'ENABLED' if settings.RATE_LIMIT_ENABLED else 'DISABLED'}")
