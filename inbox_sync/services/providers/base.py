"""Provider adapter interface."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Protocol

from inbox_sync.db.enums import ChannelProvider

AccessTokenSource = Callable[[], str]


@dataclass
class RawMessage:
    """Provider message already mapped to the unified shape."""

    provider_message_id: str
    timestamp: datetime
    thread_id: str | None = None
    sender_email: str | None = None
    sender_name: str | None = None
    recipients: list[str] = field(default_factory=list)
    subject: str | None = None
    body: str | None = None
    snippet: str | None = None
    labels: list[str] = field(default_factory=list)
    is_read: bool = False


@dataclass
class FetchResult:
    messages: list[RawMessage]
    next_cursor: str
    has_more: bool = False
    # Provider payloads dropped because they could not be mapped or no longer exist.
    skipped: int = 0


@dataclass
class WebhookRegistration:
    expires_at: datetime | None
    subscription_id: str | None = None
    client_state: str | None = None


class ProviderAdapter(Protocol):
    """Uniform sync + push-subscription surface, bound to one connection.

    Cursors are opaque: whatever ``fetch_changes`` returns as ``next_cursor``
    is persisted verbatim and handed back unchanged on the next call.
    """

    provider: ChannelProvider

    def fetch_changes(self, cursor: str | None, limit: int) -> FetchResult:
        """Return new/changed messages after ``cursor`` (``None`` = first sync)."""

    def register_webhook(self) -> WebhookRegistration:
        """Create the push subscription for this connection."""

    def renew_webhook(self) -> WebhookRegistration:
        """Extend the push subscription; safe to call on a fresh subscription."""

    def unregister_webhook(self) -> None:
        """Tear down the push subscription (best effort)."""
