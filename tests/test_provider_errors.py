import httpx
import pytest

from inbox_sync.db.enums import SyncErrorKind
from inbox_sync.services.providers.errors import (
    AuthExpiredError,
    PermanentError,
    RateLimitedError,
    ResourceGoneError,
    ResourceNotFoundError,
    TransientError,
    raise_for_provider_status,
    send_request,
)


def _response(status: int, **kwargs) -> httpx.Response:
    return httpx.Response(status, request=httpx.Request("GET", "https://api.example.com/x"), **kwargs)


@pytest.mark.parametrize(
    "status,expected,kind",
    [
        (401, AuthExpiredError, SyncErrorKind.AUTH_EXPIRED),
        (429, RateLimitedError, SyncErrorKind.RATE_LIMITED),
        (404, ResourceNotFoundError, SyncErrorKind.PERMANENT),
        (410, ResourceGoneError, SyncErrorKind.PERMANENT),
        (500, TransientError, SyncErrorKind.TRANSIENT),
        (503, TransientError, SyncErrorKind.TRANSIENT),
        (400, PermanentError, SyncErrorKind.PERMANENT),
        (403, PermanentError, SyncErrorKind.PERMANENT),
    ],
)
def test_status_mapping(status, expected, kind):
    with pytest.raises(expected) as exc_info:
        raise_for_provider_status(_response(status, json={"error": {"message": "nope"}}), provider="Test")

    assert exc_info.value.kind == kind
    assert exc_info.value.status_code == status
    assert "Test API error" in str(exc_info.value)


def test_success_passes_through():
    raise_for_provider_status(_response(204), provider="Test")


def test_retryable_flags():
    assert TransientError("x").retryable is True
    assert RateLimitedError("x").retryable is True
    assert AuthExpiredError("x").retryable is False
    assert PermanentError("x").retryable is False


def test_retry_after_header_is_parsed():
    with pytest.raises(RateLimitedError) as exc_info:
        raise_for_provider_status(_response(429, headers={"Retry-After": "17"}), provider="Test")

    assert exc_info.value.retry_after == 17


def test_unparseable_retry_after_is_dropped():
    with pytest.raises(RateLimitedError) as exc_info:
        raise_for_provider_status(
            _response(429, headers={"Retry-After": "Wed, 21 Oct 2026 07:28:00 GMT"}),
            provider="Test",
        )

    assert exc_info.value.retry_after is None


def test_gmail_style_quota_403_is_rate_limited():
    body = {"error": {"message": "quota", "errors": [{"reason": "userRateLimitExceeded"}]}}

    with pytest.raises(RateLimitedError):
        raise_for_provider_status(_response(403, json=body), provider="Gmail")


def test_non_json_error_body():
    with pytest.raises(TransientError) as exc_info:
        raise_for_provider_status(_response(502, text="<html>bad gateway</html>"), provider="Test")

    assert "bad gateway" in str(exc_info.value)


def test_send_request_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(TransientError, match="timeout"):
            send_request(client, "GET", "https://api.example.com/x", provider="Test")


def test_send_request_returns_response():
    def handler(request):
        return httpx.Response(200, json={"ok": True})

    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        response = send_request(client, "GET", "https://api.example.com/x", provider="Test")

    assert response.json() == {"ok": True}
