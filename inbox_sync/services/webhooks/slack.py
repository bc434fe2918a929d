"""Slack Events API handler."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from inbox_sync.core.config import settings
from inbox_sync.db.enums import ChannelProvider
from inbox_sync.services import connection_service
from inbox_sync.services.webhooks.base import enqueue_connection_sync, read_body_safe

logger = logging.getLogger(__name__)

MAX_CLOCK_SKEW_SECONDS = 60 * 5


def verify_slack_signature(
    body: bytes,
    signature: str,
    timestamp: str,
    secret: str,
    *,
    now: float | None = None,
) -> bool:
    """
    Verify Slack request signature.

    Slack signs: v0:timestamp:body
    HMAC-SHA256 with the signing secret, compared to X-Slack-Signature.
    """
    try:
        sent_at = int(timestamp)
    except (TypeError, ValueError):
        return False
    if abs((now or time.time()) - sent_at) > MAX_CLOCK_SKEW_SECONDS:
        return False

    message = b"v0:" + timestamp.encode("utf-8") + b":" + body
    expected = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return hmac.compare_digest(f"v0={expected}", signature)


class SlackWebhookHandler:
    async def handle(self, request: Request, db: Session, **kwargs):
        body = await read_body_safe(request)

        if settings.SLACK_SIGNING_SECRET:
            signature = request.headers.get("x-slack-signature", "")
            timestamp = request.headers.get("x-slack-request-timestamp", "")
            if not signature or not timestamp:
                logger.warning("Slack event missing signature or timestamp")
                raise HTTPException(403, "Missing signature")
            if not verify_slack_signature(body, signature, timestamp, settings.SLACK_SIGNING_SECRET):
                logger.warning("Slack event invalid signature")
                raise HTTPException(403, "Invalid signature")

        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            raise HTTPException(400, "Invalid JSON")

        if data.get("type") == "url_verification":
            return JSONResponse({"challenge": data.get("challenge", "")}, status_code=200)

        if data.get("type") != "event_callback":
            return {"status": "ignored", "reason": "unsupported_type"}

        event = data.get("event") or {}
        if event.get("type") != "message":
            return {"status": "ignored", "reason": "unsupported_event"}

        team_id = str(data.get("team_id") or "")
        connections = connection_service.find_syncable_by_account(
            db, provider=ChannelProvider.SLACK, provider_account_id=team_id
        )
        if not team_id or not connections:
            return {"status": "ignored", "reason": "connection_not_found"}

        queued = sum(
            1
            for connection in connections
            if enqueue_connection_sync(db, connection, source="slack_event")
        )
        return {"status": "accepted", "connections": len(connections), "queued": queued}
