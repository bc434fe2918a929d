"""Webhooks router - provider push notifications."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from inbox_sync.core.deps import get_db
from inbox_sync.core.rate_limit import limiter, webhook_limit
from inbox_sync.services.webhooks.registry import get_handler

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/{provider}", status_code=202)
@limiter.limit(webhook_limit)
async def receive_provider_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Receive a provider push notification.

    Acknowledges immediately (202) after queueing a sync job; the sync itself
    runs in the worker under the connection's lease. Unknown or inactive
    connections are acknowledged and dropped.
    """
    try:
        handler = get_handler(provider)
    except KeyError:
        raise HTTPException(status_code=404, detail="Unknown webhook provider")
    return await handler.handle(request, db)
