"""Outlook (Microsoft Graph) adapter: delta-link cursors and change subscriptions."""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

import httpx

from inbox_sync.core.config import settings
from inbox_sync.db.enums import ChannelProvider
from inbox_sync.db.models import ChannelConnection
from inbox_sync.services.providers.base import (
    AccessTokenSource,
    FetchResult,
    RawMessage,
    WebhookRegistration,
)
from inbox_sync.services.providers.errors import (
    PermanentError,
    ResourceGoneError,
    ResourceNotFoundError,
    send_request,
)

logger = logging.getLogger(__name__)

_GRAPH_API = "https://graph.microsoft.com/v1.0"
_DELTA_URL = f"{_GRAPH_API}/me/mailFolders/inbox/messages/delta"
_SUBSCRIPTION_RESOURCE = "me/mailFolders('Inbox')/messages"
_SELECT_FIELDS = ",".join(
    [
        "id",
        "conversationId",
        "subject",
        "bodyPreview",
        "body",
        "from",
        "toRecipients",
        "ccRecipients",
        "receivedDateTime",
        "isRead",
        "categories",
    ]
)


def _parse_graph_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    # Graph emits 7 fractional digits; fromisoformat accepts at most 6.
    text = value.replace("Z", "+00:00")
    if "." in text:
        head, _, rest = text.partition(".")
        digits = "".join(ch for ch in rest if ch.isdigit())
        tail = rest[len(digits):]
        text = f"{head}.{digits[:6]}{tail}"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_graph_datetime(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.0000000Z")


def parse_outlook_message(item: dict) -> RawMessage:
    """Map a Graph message resource to a RawMessage."""
    message_id = item.get("id")
    if not message_id:
        raise ValueError("Graph message missing id")
    timestamp = _parse_graph_datetime(item.get("receivedDateTime"))
    if timestamp is None:
        raise ValueError("Graph message missing receivedDateTime")

    sender = (item.get("from") or {}).get("emailAddress") or {}
    recipients: list[str] = []
    for entry in (item.get("toRecipients") or []) + (item.get("ccRecipients") or []):
        address = (entry.get("emailAddress") or {}).get("address")
        if address:
            recipients.append(str(address))
    body = item.get("body") or {}

    return RawMessage(
        provider_message_id=str(message_id),
        thread_id=item.get("conversationId"),
        sender_email=(sender.get("address") or "").lower() or None,
        sender_name=sender.get("name"),
        recipients=recipients,
        subject=item.get("subject"),
        body=body.get("content"),
        snippet=item.get("bodyPreview"),
        timestamp=timestamp,
        labels=[str(c) for c in item.get("categories") or []],
        is_read=bool(item.get("isRead")),
    )


class OutlookAdapter:
    provider = ChannelProvider.OUTLOOK

    def __init__(
        self,
        connection: ChannelConnection,
        access_token: AccessTokenSource,
        *,
        transport: httpx.BaseTransport | None = None,
    ):
        self.connection = connection
        self._access_token = access_token
        self._transport = transport

    def _client(self, timeout: float | None = None) -> httpx.Client:
        return httpx.Client(
            timeout=timeout or settings.PROVIDER_TIMEOUT_SECONDS,
            transport=self._transport,
        )

    def _call(
        self,
        client: httpx.Client,
        method: str,
        url: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
        headers: dict | None = None,
    ) -> dict:
        response = send_request(
            client,
            method,
            url,
            provider="Microsoft Graph",
            headers={"Authorization": f"Bearer {self._access_token()}", **(headers or {})},
            params=params,
            json=json,
        )
        if not response.content:
            return {}
        return response.json()

    # =========================================================================
    # Sync (delta query)
    # =========================================================================

    def fetch_changes(self, cursor: str | None, limit: int) -> FetchResult:
        with self._client() as client:
            try:
                page = self._delta_page(client, cursor, limit)
            except ResourceGoneError:
                if cursor is None:
                    raise
                logger.warning(
                    "Outlook delta token expired for connection %s; re-bootstrapping",
                    self.connection.id,
                )
                page = self._delta_page(client, None, limit)

        messages: list[RawMessage] = []
        skipped = 0
        for item in page.get("value") or []:
            if "@removed" in item:
                continue
            try:
                messages.append(parse_outlook_message(item))
            except (KeyError, TypeError, ValueError) as exc:
                skipped += 1
                logger.warning("Skipping unparseable Graph message: %s", exc)

        next_link = page.get("@odata.nextLink")
        delta_link = page.get("@odata.deltaLink")
        next_cursor = next_link or delta_link
        if not next_cursor:
            raise PermanentError("Graph delta response had neither nextLink nor deltaLink")
        return FetchResult(
            messages=messages,
            next_cursor=next_cursor,
            has_more=bool(next_link),
            skipped=skipped,
        )

    def _delta_page(self, client: httpx.Client, cursor: str | None, limit: int) -> dict:
        headers = {"Prefer": f"odata.maxpagesize={limit}"}
        if cursor:
            # Next/delta links already carry every query parameter.
            return self._call(client, "GET", cursor, headers=headers)
        since = datetime.now(timezone.utc) - timedelta(days=settings.SYNC_BOOTSTRAP_DAYS)
        return self._call(
            client,
            "GET",
            _DELTA_URL,
            headers=headers,
            params={
                "$select": _SELECT_FIELDS,
                "$filter": f"receivedDateTime ge {since.strftime('%Y-%m-%dT%H:%M:%SZ')}",
            },
        )

    # =========================================================================
    # Push subscription
    # =========================================================================

    def _expiration(self) -> datetime:
        return datetime.now(timezone.utc) + timedelta(minutes=settings.OUTLOOK_SUBSCRIPTION_MINUTES)

    def register_webhook(self) -> WebhookRegistration:
        client_state = secrets.token_urlsafe(24)
        with self._client(settings.RENEWAL_TIMEOUT_SECONDS) as client:
            payload = self._call(
                client,
                "POST",
                f"{_GRAPH_API}/subscriptions",
                json={
                    "changeType": "created,updated",
                    "notificationUrl": settings.OUTLOOK_NOTIFICATION_URL,
                    "resource": _SUBSCRIPTION_RESOURCE,
                    "expirationDateTime": _format_graph_datetime(self._expiration()),
                    "clientState": client_state,
                },
            )
        subscription_id = payload.get("id")
        if not subscription_id:
            raise PermanentError("Graph subscription response missing id")
        return WebhookRegistration(
            expires_at=_parse_graph_datetime(payload.get("expirationDateTime")),
            subscription_id=str(subscription_id),
            client_state=client_state,
        )

    def renew_webhook(self) -> WebhookRegistration:
        subscription_id = self.connection.webhook_subscription_id
        if not subscription_id:
            return self.register_webhook()
        try:
            with self._client(settings.RENEWAL_TIMEOUT_SECONDS) as client:
                payload = self._call(
                    client,
                    "PATCH",
                    f"{_GRAPH_API}/subscriptions/{subscription_id}",
                    json={"expirationDateTime": _format_graph_datetime(self._expiration())},
                )
        except ResourceNotFoundError:
            logger.info(
                "Graph subscription %s gone for connection %s; recreating",
                subscription_id,
                self.connection.id,
            )
            return self.register_webhook()
        return WebhookRegistration(
            expires_at=_parse_graph_datetime(payload.get("expirationDateTime")),
            subscription_id=subscription_id,
            client_state=self.connection.webhook_client_state,
        )

    def unregister_webhook(self) -> None:
        subscription_id = self.connection.webhook_subscription_id
        if not subscription_id:
            return
        try:
            with self._client(settings.RENEWAL_TIMEOUT_SECONDS) as client:
                self._call(client, "DELETE", f"{_GRAPH_API}/subscriptions/{subscription_id}")
        except ResourceNotFoundError:
            pass
