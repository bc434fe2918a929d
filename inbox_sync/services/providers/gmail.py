"""Gmail adapter: history-id cursors and Pub/Sub watch subscriptions."""

from __future__ import annotations

import base64
import logging
from datetime import datetime, timezone
from email.utils import getaddresses, parseaddr, parsedate_to_datetime

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
    ResourceNotFoundError,
    send_request,
)

logger = logging.getLogger(__name__)

_GMAIL_API = "https://gmail.googleapis.com/gmail/v1/users/me"
_HISTORY_TYPES = ["messageAdded", "labelAdded", "labelRemoved"]
_WATCH_LABEL_IDS = ["INBOX"]
_MAX_PAGE_SIZE = 500


def _parse_watch_expiration(payload: dict) -> datetime | None:
    """Gmail returns watch expiration as epoch milliseconds (string)."""
    raw = payload.get("expiration")
    if raw in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        return None


def _decode_body_data(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode()).decode("utf-8", errors="replace")


def _extract_body(payload: dict) -> str | None:
    """Prefer text/plain, fall back to text/html, walking multipart trees."""
    plain: str | None = None
    html: str | None = None
    stack = [payload]
    while stack:
        part = stack.pop(0)
        mime_type = part.get("mimeType", "")
        data = (part.get("body") or {}).get("data")
        if data and mime_type == "text/plain" and plain is None:
            plain = _decode_body_data(data)
        elif data and mime_type == "text/html" and html is None:
            html = _decode_body_data(data)
        stack.extend(part.get("parts") or [])
    return plain if plain is not None else html


def _message_timestamp(message: dict, headers: dict[str, str]) -> datetime:
    internal_date = message.get("internalDate")
    if internal_date:
        return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
    date_header = headers.get("date")
    if date_header:
        parsed = parsedate_to_datetime(date_header)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    raise ValueError("Gmail message has neither internalDate nor Date header")


def parse_gmail_message(message: dict) -> RawMessage:
    """Map a users.messages.get (format=full) payload to a RawMessage."""
    message_id = message.get("id")
    if not message_id:
        raise ValueError("Gmail message payload missing id")

    payload = message.get("payload") or {}
    headers = {
        str(h.get("name", "")).lower(): str(h.get("value", ""))
        for h in payload.get("headers") or []
    }
    sender_name, sender_email = parseaddr(headers.get("from", ""))
    recipients = [
        addr
        for _, addr in getaddresses(
            [headers.get("to", ""), headers.get("cc", "")]
        )
        if addr
    ]
    labels = [str(label) for label in message.get("labelIds") or []]

    return RawMessage(
        provider_message_id=str(message_id),
        thread_id=message.get("threadId"),
        sender_email=sender_email.lower() or None,
        sender_name=sender_name or None,
        recipients=recipients,
        subject=headers.get("subject"),
        body=_extract_body(payload),
        snippet=message.get("snippet"),
        timestamp=_message_timestamp(message, headers),
        labels=labels,
        is_read="UNREAD" not in labels,
    )


class GmailAdapter:
    provider = ChannelProvider.GMAIL

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

    # =========================================================================
    # HTTP helpers
    # =========================================================================

    def _client(self, timeout: float | None = None) -> httpx.Client:
        return httpx.Client(
            timeout=timeout or settings.PROVIDER_TIMEOUT_SECONDS,
            transport=self._transport,
        )

    def _call(
        self,
        client: httpx.Client,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
    ) -> dict:
        response = send_request(
            client,
            method,
            f"{_GMAIL_API}{path}",
            provider="Gmail",
            headers={"Authorization": f"Bearer {self._access_token()}"},
            params=params,
            json=json,
        )
        if not response.content:
            return {}
        return response.json()

    def _get_message(self, client: httpx.Client, message_id: str) -> dict | None:
        try:
            return self._call(client, "GET", f"/messages/{message_id}", params={"format": "full"})
        except ResourceNotFoundError:
            # Deleted between the history record and our fetch.
            logger.info("Gmail message vanished before fetch: %s", message_id)
            return None

    def _load_messages(self, client: httpx.Client, message_ids: list[str]) -> tuple[list[RawMessage], int]:
        messages: list[RawMessage] = []
        skipped = 0
        for message_id in message_ids:
            payload = self._get_message(client, message_id)
            if payload is None:
                skipped += 1
                continue
            try:
                messages.append(parse_gmail_message(payload))
            except (KeyError, TypeError, ValueError) as exc:
                skipped += 1
                logger.warning("Skipping unparseable Gmail message %s: %s", message_id, exc)
        return messages, skipped

    # =========================================================================
    # Sync
    # =========================================================================

    def fetch_changes(self, cursor: str | None, limit: int) -> FetchResult:
        with self._client() as client:
            if cursor is None:
                return self._bootstrap(client, limit)
            try:
                return self._fetch_history(client, cursor, limit)
            except ResourceNotFoundError:
                # startHistoryId older than Gmail's retention window.
                logger.warning(
                    "Gmail history expired for connection %s; re-bootstrapping",
                    self.connection.id,
                )
                return self._bootstrap(client, limit)

    def _bootstrap(self, client: httpx.Client, limit: int) -> FetchResult:
        profile = self._call(client, "GET", "/profile")
        history_id = profile.get("historyId")
        if not history_id:
            raise PermanentError("Gmail profile response missing historyId")

        listing = self._call(
            client,
            "GET",
            "/messages",
            params={
                "q": f"newer_than:{settings.SYNC_BOOTSTRAP_DAYS}d",
                "labelIds": _WATCH_LABEL_IDS,
                "maxResults": min(limit, _MAX_PAGE_SIZE),
            },
        )
        message_ids = [str(item["id"]) for item in listing.get("messages") or [] if item.get("id")]
        messages, skipped = self._load_messages(client, message_ids[:limit])
        # The cursor points at the mailbox head, so anything older than the
        # bootstrap window is intentionally not drained.
        return FetchResult(messages=messages, next_cursor=str(history_id), skipped=skipped)

    def _fetch_history(self, client: httpx.Client, cursor: str, limit: int) -> FetchResult:
        message_ids: list[str] = []
        seen: set[str] = set()
        last_record_id: str | None = None
        mailbox_history_id: str | None = None
        page_token: str | None = None
        has_more = False

        while True:
            params: dict[str, object] = {
                "startHistoryId": cursor,
                "historyTypes": _HISTORY_TYPES,
                "maxResults": min(limit, _MAX_PAGE_SIZE),
            }
            if page_token:
                params["pageToken"] = page_token
            page = self._call(client, "GET", "/history", params=params)
            mailbox_history_id = page.get("historyId") or mailbox_history_id

            for record in page.get("history") or []:
                record_ids: list[str] = []
                for key in ("messagesAdded", "labelsAdded", "labelsRemoved"):
                    for item in record.get(key) or []:
                        message_id = (item.get("message") or {}).get("id")
                        if message_id and message_id not in seen and message_id not in record_ids:
                            record_ids.append(str(message_id))
                if message_ids and len(message_ids) + len(record_ids) > limit:
                    has_more = True
                    break
                message_ids.extend(record_ids)
                seen.update(record_ids)
                if record.get("id"):
                    last_record_id = str(record["id"])

            if has_more:
                break
            page_token = page.get("nextPageToken")
            if not page_token:
                break

        if has_more:
            next_cursor = last_record_id or cursor
        else:
            next_cursor = str(mailbox_history_id or last_record_id or cursor)

        messages, skipped = self._load_messages(client, message_ids)
        return FetchResult(
            messages=messages,
            next_cursor=next_cursor,
            has_more=has_more,
            skipped=skipped,
        )

    # =========================================================================
    # Push subscription (users.watch)
    # =========================================================================

    def register_webhook(self) -> WebhookRegistration:
        if not settings.GMAIL_PUSH_TOPIC:
            raise PermanentError("GMAIL_PUSH_TOPIC not configured")
        with self._client(settings.RENEWAL_TIMEOUT_SECONDS) as client:
            payload = self._call(
                client,
                "POST",
                "/watch",
                json={
                    "topicName": settings.GMAIL_PUSH_TOPIC,
                    "labelIds": _WATCH_LABEL_IDS,
                    "labelFilterBehavior": "INCLUDE",
                },
            )
        expires_at = _parse_watch_expiration(payload)
        if expires_at is None:
            raise PermanentError("Gmail watch response missing expiration")
        return WebhookRegistration(expires_at=expires_at)

    def renew_webhook(self) -> WebhookRegistration:
        # users.watch replaces any existing watch, so renewal is re-registration.
        return self.register_webhook()

    def unregister_webhook(self) -> None:
        with self._client(settings.RENEWAL_TIMEOUT_SECONDS) as client:
            self._call(client, "POST", "/stop")
