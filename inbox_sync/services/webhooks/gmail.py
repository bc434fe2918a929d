"""Gmail Pub/Sub push handler."""

from __future__ import annotations

import base64
import binascii
import hmac
import json
import logging

from fastapi import HTTPException, Request
from sqlalchemy.orm import Session

from inbox_sync.core.config import settings
from inbox_sync.db.enums import ChannelProvider
from inbox_sync.services import connection_service
from inbox_sync.services.webhooks.base import enqueue_connection_sync, read_body_safe

logger = logging.getLogger(__name__)


def decode_push_data(data: str) -> dict:
    """Decode Pub/Sub ``message.data`` into the Gmail notification object."""
    padded = data + "=" * (-len(data) % 4)
    decoded = base64.b64decode(padded.encode("utf-8"), altchars=b"-_")
    payload = json.loads(decoded.decode("utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Gmail push data is not an object")
    return payload


class GmailWebhookHandler:
    async def handle(self, request: Request, db: Session, **kwargs) -> dict:
        """
        Receive Gmail watch notifications via Pub/Sub push.

        The notification only says "something changed for mailbox X at history
        id N"; the history itself is read by the sync job, never here.
        Malformed payloads are acknowledged so Pub/Sub stops redelivering them.
        """
        expected_token = settings.GMAIL_PUSH_VERIFICATION_TOKEN
        if expected_token:
            token = request.query_params.get("token", "")
            if not hmac.compare_digest(token, expected_token):
                logger.warning("Gmail push with invalid verification token")
                raise HTTPException(403, "Invalid token")

        body = await read_body_safe(request)
        try:
            envelope = json.loads(body)
        except json.JSONDecodeError:
            raise HTTPException(400, "Invalid JSON")

        message = envelope.get("message") if isinstance(envelope, dict) else None
        if not isinstance(message, dict):
            return {"status": "ignored", "reason": "invalid_envelope"}
        data = message.get("data")
        if not data:
            return {"status": "ignored", "reason": "missing_data"}

        try:
            notification = decode_push_data(str(data))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            logger.warning("Gmail push with undecodable data")
            return {"status": "ignored", "reason": "invalid_data"}

        email_address = str(notification.get("emailAddress") or "").strip().lower()
        if not email_address:
            return {"status": "ignored", "reason": "missing_email"}

        connections = connection_service.find_syncable_by_account(
            db, provider=ChannelProvider.GMAIL, provider_account_id=email_address
        )
        if not connections:
            logger.info("Gmail push for unknown or inactive mailbox")
            return {"status": "ignored", "reason": "connection_not_found"}

        queued = sum(
            1
            for connection in connections
            if enqueue_connection_sync(db, connection, source="gmail_push")
        )
        return {
            "status": "accepted",
            "connections": len(connections),
            "queued": queued,
            "history_id": str(notification.get("historyId") or ""),
        }
