"""Provider failure taxonomy and HTTP status mapping."""

from __future__ import annotations

import logging

import httpx

from inbox_sync.db.enums import SyncErrorKind

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Base class for failures surfaced by a provider adapter."""

    kind: SyncErrorKind = SyncErrorKind.TRANSIENT
    retryable: bool = True

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthExpiredError(ProviderError):
    """Credentials rejected; terminal for the connection until re-auth."""

    kind = SyncErrorKind.AUTH_EXPIRED
    retryable = False


class RateLimitedError(ProviderError):
    """Provider asked us to back off."""

    kind = SyncErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after: int | None = None,
    ):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class TransientError(ProviderError):
    """Network failure, timeout, or provider 5xx."""

    kind = SyncErrorKind.TRANSIENT


class PermanentError(ProviderError):
    """Malformed request or unsupported resource; retrying will not help."""

    kind = SyncErrorKind.PERMANENT
    retryable = False


class ResourceNotFoundError(PermanentError):
    """404 - deleted message, expired history id, or unknown subscription."""


class ResourceGoneError(PermanentError):
    """410 - delta/sync state no longer valid on the provider side."""


def _parse_retry_after(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return max(int(float(value)), 0)
    except ValueError:
        return None


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or "unknown error"
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("code") or "unknown error")[:200]
    if isinstance(error, str):
        return error[:200]
    return "unknown error"


def _is_quota_error(response: httpx.Response) -> bool:
    # Gmail reports per-user quota exhaustion as 403 rather than 429.
    try:
        payload = response.json()
    except ValueError:
        return False
    errors = (payload.get("error") or {}).get("errors") or []
    return any(
        item.get("reason") in ("rateLimitExceeded", "userRateLimitExceeded")
        for item in errors
        if isinstance(item, dict)
    )


def raise_for_provider_status(response: httpx.Response, *, provider: str) -> None:
    """Translate an HTTP error response into the provider failure taxonomy."""
    status = response.status_code
    if status < 400:
        return

    detail = _error_detail(response)
    message = f"{provider} API error {status}: {detail}"

    if status == 401:
        raise AuthExpiredError(message, status_code=status)
    if status == 429 or (status == 403 and _is_quota_error(response)):
        raise RateLimitedError(
            message,
            status_code=status,
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
        )
    if status == 404:
        raise ResourceNotFoundError(message, status_code=status)
    if status == 410:
        raise ResourceGoneError(message, status_code=status)
    if status >= 500:
        raise TransientError(message, status_code=status)
    raise PermanentError(message, status_code=status)


def send_request(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    provider: str,
    **kwargs,
) -> httpx.Response:
    """Issue a request and map transport failures/timeouts to TransientError."""
    try:
        response = client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        raise TransientError(f"{provider} API timeout: {exc.__class__.__name__}") from exc
    except httpx.TransportError as exc:
        raise TransientError(f"{provider} API network error: {exc}") from exc
    raise_for_provider_status(response, provider=provider)
    return response
