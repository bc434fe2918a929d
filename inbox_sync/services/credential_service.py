"""Access-token resolution for channel connections.

Tokens are issued by the external OAuth flow; this module only decrypts them
and, when they have expired, exchanges the stored refresh token.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from sqlalchemy.orm import Session

from inbox_sync.core.async_utils import run_async
from inbox_sync.core.config import settings
from inbox_sync.core.encryption import decrypt_token, encrypt_token
from inbox_sync.db.enums import ChannelProvider
from inbox_sync.db.models import ChannelConnection
from inbox_sync.services.providers.errors import AuthExpiredError, TransientError

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
MICROSOFT_SCOPES = "offline_access https://graph.microsoft.com/Mail.Read"

# Refresh slightly early so a token cannot expire mid-sync.
_EXPIRY_SKEW = timedelta(minutes=1)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


async def _post_token_request(url: str, data: dict[str, str]) -> dict[str, Any]:
    try:
        async with httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS) as client:
            response = await client.post(url, data=data)
    except httpx.HTTPError as exc:
        raise TransientError(f"Token refresh network error: {exc}") from exc

    if response.status_code in (400, 401):
        # invalid_grant: refresh token revoked or expired.
        raise AuthExpiredError(f"Token refresh rejected ({response.status_code})")
    if response.status_code >= 400:
        raise TransientError(f"Token refresh failed ({response.status_code})")
    return response.json()


async def refresh_google_token(refresh_token: str) -> dict[str, Any]:
    return await _post_token_request(
        GOOGLE_TOKEN_URL,
        {
            "client_id": settings.GOOGLE_CLIENT_ID,
            "client_secret": settings.GOOGLE_CLIENT_SECRET,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        },
    )


async def refresh_microsoft_token(refresh_token: str) -> dict[str, Any]:
    return await _post_token_request(
        MICROSOFT_TOKEN_URL.format(tenant=settings.MICROSOFT_TENANT),
        {
            "client_id": settings.MICROSOFT_CLIENT_ID,
            "client_secret": settings.MICROSOFT_CLIENT_SECRET,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
            "scope": MICROSOFT_SCOPES,
        },
    )


_REFRESHERS = {
    ChannelProvider.GMAIL: refresh_google_token,
    ChannelProvider.OUTLOOK: refresh_microsoft_token,
}


def _refresh_connection_token(db: Session, connection: ChannelConnection) -> str:
    refresher = _REFRESHERS.get(connection.provider)
    if refresher is None or not connection.refresh_token_encrypted:
        raise AuthExpiredError("Access token expired and no refresh token is available")

    refresh_token = decrypt_token(connection.refresh_token_encrypted)
    result = run_async(refresher(refresh_token), timeout=settings.PROVIDER_TIMEOUT_SECONDS)

    access_token = result.get("access_token")
    if not access_token:
        raise AuthExpiredError("Token refresh did not return access_token")

    connection.access_token_encrypted = encrypt_token(access_token)
    expires_in = result.get("expires_in")
    connection.token_expires_at = (
        _now_utc() + timedelta(seconds=int(expires_in)) if expires_in else None
    )
    # Microsoft rotates refresh tokens on every exchange, and the old one may
    # stop working. Committed on its own so a later rollback cannot drop it.
    if result.get("refresh_token"):
        connection.refresh_token_encrypted = encrypt_token(result["refresh_token"])
    db.add(connection)
    db.commit()
    logger.info("Refreshed access token for connection %s", connection.id)
    return access_token


def get_access_token(
    db: Session,
    connection: ChannelConnection,
    *,
    now: datetime | None = None,
) -> str:
    """Return a usable access token, refreshing it when expired."""
    now = now or _now_utc()
    if connection.access_token_encrypted and (
        connection.token_expires_at is None
        or connection.token_expires_at > now + _EXPIRY_SKEW
    ):
        return decrypt_token(connection.access_token_encrypted)
    return _refresh_connection_token(db, connection)
