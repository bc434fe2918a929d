"""Rate limiting configuration for the ingress API."""

import os

from slowapi import Limiter
from slowapi.util import get_remote_address

from inbox_sync.core.config import settings

IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")

# Provider push traffic arrives in bursts from a small set of provider IPs,
# so only the webhook routes carry an explicit limit.
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://" if IS_TESTING else settings.RATE_LIMIT_STORAGE_URI,
    default_limits=[],
    enabled=not IS_TESTING,
)


def webhook_limit() -> str:
    return f"{settings.RATE_LIMIT_WEBHOOK}/minute"
