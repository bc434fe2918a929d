"""Webhook handler registry."""

from __future__ import annotations

from inbox_sync.services.webhooks.base import WebhookHandler
from inbox_sync.services.webhooks.gmail import GmailWebhookHandler
from inbox_sync.services.webhooks.outlook import OutlookWebhookHandler
from inbox_sync.services.webhooks.slack import SlackWebhookHandler

_HANDLERS: dict[str, WebhookHandler] = {
    "gmail": GmailWebhookHandler(),
    "outlook": OutlookWebhookHandler(),
    "slack": SlackWebhookHandler(),
}


def get_handler(name: str) -> WebhookHandler:
    handler = _HANDLERS.get(name)
    if not handler:
        raise KeyError(f"Unknown webhook handler: {name}")
    return handler
