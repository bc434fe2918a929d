"""Slack adapter: per-channel ``ts`` windows packed into one opaque cursor."""

from __future__ import annotations

import json
import logging
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
    AuthExpiredError,
    PermanentError,
    RateLimitedError,
    TransientError,
    send_request,
)

logger = logging.getLogger(__name__)

_SLACK_API = "https://slack.com/api"
_AUTH_ERRORS = {
    "invalid_auth",
    "not_authed",
    "token_revoked",
    "token_expired",
    "account_inactive",
}
_TRANSIENT_ERRORS = {"internal_error", "fatal_error", "service_unavailable", "request_timeout"}
_IGNORED_SUBTYPES = {"channel_join", "channel_leave", "channel_topic", "channel_purpose"}


def parse_slack_message(channel_id: str, message: dict) -> RawMessage:
    ts = message.get("ts")
    if not ts:
        raise ValueError("Slack message missing ts")
    text = message.get("text") or ""
    return RawMessage(
        # ts is only unique within a channel.
        provider_message_id=f"{channel_id}:{ts}",
        thread_id=message.get("thread_ts"),
        sender_email=None,
        sender_name=message.get("user") or message.get("username") or message.get("bot_id"),
        recipients=[],
        subject=None,
        body=text,
        snippet=text[:200],
        timestamp=datetime.fromtimestamp(float(ts), tz=timezone.utc),
        labels=[channel_id],
        is_read=False,
    )


def _decode_cursor(cursor: str | None) -> dict[str, dict]:
    if not cursor:
        return {}
    try:
        state = json.loads(cursor)
    except json.JSONDecodeError:
        logger.warning("Discarding malformed Slack cursor")
        return {}
    return state if isinstance(state, dict) else {}


class SlackAdapter:
    """
    Cursor layout, per channel: ``oldest`` is the lower bound already fully
    ingested; ``latest`` is set while a backlog between ``oldest`` and it is
    still being drained (history pages arrive newest-first); ``high`` is the
    newest ts seen, which becomes ``oldest`` once the backlog is drained.
    """

    provider = ChannelProvider.SLACK

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

    def _call(self, client: httpx.Client, method: str, params: dict) -> dict:
        response = send_request(
            client,
            "GET",
            f"{_SLACK_API}/{method}",
            provider="Slack",
            headers={"Authorization": f"Bearer {self._access_token()}"},
            params=params,
        )
        data = response.json()
        if data.get("ok"):
            return data

        error = str(data.get("error") or "unknown_error")
        message = f"Slack API error on {method}: {error}"
        if error in _AUTH_ERRORS:
            raise AuthExpiredError(message)
        if error == "ratelimited":
            raise RateLimitedError(message, retry_after=None)
        if error in _TRANSIENT_ERRORS:
            raise TransientError(message)
        raise PermanentError(message)

    def _channel_ids(self, client: httpx.Client) -> list[str]:
        configured = (self.connection.provider_config or {}).get("channel_ids")
        if configured:
            return sorted(str(c) for c in configured)
        data = self._call(
            client,
            "conversations.list",
            {"types": "public_channel,private_channel", "exclude_archived": "true", "limit": 200},
        )
        return sorted(
            str(channel["id"])
            for channel in data.get("channels") or []
            if channel.get("id") and channel.get("is_member")
        )

    def fetch_changes(self, cursor: str | None, limit: int) -> FetchResult:
        state = _decode_cursor(cursor)
        bootstrap_oldest = (
            datetime.now(timezone.utc) - timedelta(days=settings.SYNC_BOOTSTRAP_DAYS)
        ).timestamp()

        messages: list[RawMessage] = []
        skipped = 0
        has_more = False

        with httpx.Client(timeout=settings.PROVIDER_TIMEOUT_SECONDS, transport=self._transport) as client:
            for channel_id in self._channel_ids(client):
                remaining = limit - len(messages)
                if remaining <= 0:
                    has_more = True
                    break

                window = dict(state.get(channel_id) or {"oldest": f"{bootstrap_oldest:.6f}"})
                params = {"channel": channel_id, "oldest": window["oldest"], "limit": remaining}
                if window.get("latest"):
                    params["latest"] = window["latest"]
                data = self._call(client, "conversations.history", params)

                batch = data.get("messages") or []
                timestamps: list[str] = []
                for item in batch:
                    if item.get("ts"):
                        timestamps.append(str(item["ts"]))
                    if item.get("subtype") in _IGNORED_SUBTYPES:
                        continue
                    try:
                        messages.append(parse_slack_message(channel_id, item))
                    except (TypeError, ValueError) as exc:
                        skipped += 1
                        logger.warning("Skipping unparseable Slack message: %s", exc)

                if timestamps:
                    newest = max(timestamps, key=float)
                    if not window.get("high") or float(newest) > float(window["high"]):
                        window["high"] = newest

                if data.get("has_more") and timestamps:
                    window["latest"] = min(timestamps, key=float)
                    has_more = True
                else:
                    if window.get("high"):
                        window["oldest"] = window["high"]
                    window.pop("latest", None)
                state[channel_id] = window

        return FetchResult(
            messages=messages,
            next_cursor=json.dumps(state, sort_keys=True),
            has_more=has_more,
            skipped=skipped,
        )

    # Slack Events API subscriptions are configured per app, not per
    # connection, and never expire.
    def register_webhook(self) -> WebhookRegistration:
        return WebhookRegistration(expires_at=None)

    def renew_webhook(self) -> WebhookRegistration:
        return WebhookRegistration(expires_at=None)

    def unregister_webhook(self) -> None:
        return None
