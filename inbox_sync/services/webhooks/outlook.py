"""Microsoft Graph change-notification handler."""

from __future__ import annotations

import hmac
import json
import logging

from fastapi import HTTPException, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from inbox_sync.db.enums import ConnectionStatus
from inbox_sync.services import connection_service
from inbox_sync.services.webhooks.base import enqueue_connection_sync, read_body_safe

logger = logging.getLogger(__name__)


class OutlookWebhookHandler:
    async def handle(self, request: Request, db: Session, **kwargs):
        """
        Receive Graph change notifications.

        - Subscription validation: echo ``validationToken`` as text/plain.
        - Notifications: resolve by subscriptionId, check clientState, queue sync.
        """
        validation_token = request.query_params.get("validationToken")
        if validation_token is not None:
            return PlainTextResponse(validation_token, status_code=200)

        body = await read_body_safe(request)
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            raise HTTPException(400, "Invalid JSON")

        notifications = data.get("value") if isinstance(data, dict) else None
        if not isinstance(notifications, list):
            raise HTTPException(400, "Missing value array")

        queued = 0
        ignored = 0
        seen: set[str] = set()
        for notification in notifications:
            if not isinstance(notification, dict):
                ignored += 1
                continue
            subscription_id = str(notification.get("subscriptionId") or "")
            if not subscription_id:
                ignored += 1
                continue

            connection = connection_service.find_by_subscription_id(db, subscription_id)
            if connection is None or ConnectionStatus(connection.status) not in (
                connection_service.SYNCABLE_STATUSES
            ):
                ignored += 1
                continue

            client_state = str(notification.get("clientState") or "")
            expected = connection.webhook_client_state or ""
            if not expected or not hmac.compare_digest(client_state, expected):
                logger.warning(
                    "Graph notification clientState mismatch for connection %s", connection.id
                )
                ignored += 1
                continue

            # Graph batches several notifications per subscription.
            if subscription_id in seen:
                continue
            seen.add(subscription_id)
            if enqueue_connection_sync(db, connection, source="outlook_notification"):
                queued += 1

        if not seen:
            return {"status": "ignored", "ignored": ignored}
        return {"status": "accepted", "queued": queued, "ignored": ignored}
