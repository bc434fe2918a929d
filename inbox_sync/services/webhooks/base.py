"""Webhook handler interface and shared ingress helpers."""

from __future__ import annotations

import logging
from typing import Protocol

from fastapi import HTTPException, Request, Response
from sqlalchemy.orm import Session

from inbox_sync.core.structured_logging import build_log_context
from inbox_sync.db.enums import JobStatus, JobType, SyncTrigger
from inbox_sync.db.models import ChannelConnection
from inbox_sync.services import job_service

logger = logging.getLogger(__name__)

MAX_PAYLOAD_BYTES = 1 * 1024 * 1024  # 1 MB

WebhookResult = dict | Response


class WebhookHandler(Protocol):
    async def handle(self, request: Request, db: Session, **kwargs) -> WebhookResult:
        """Acknowledge a provider push and queue the sync it implies."""


async def read_body_safe(request: Request) -> bytes:
    content_length = request.headers.get("content-length")
    if content_length:
        try:
            if int(content_length) > MAX_PAYLOAD_BYTES:
                raise HTTPException(413, "Payload too large")
        except ValueError:
            pass

    chunks: list[bytes] = []
    total = 0
    async for chunk in request.stream():
        if not chunk:
            continue
        total += len(chunk)
        if total > MAX_PAYLOAD_BYTES:
            raise HTTPException(413, "Payload too large")
        chunks.append(chunk)
    return b"".join(chunks)


def enqueue_connection_sync(db: Session, connection: ChannelConnection, *, source: str) -> bool:
    """
    Queue a push-triggered sync for the worker.

    Collapses bursts: while a sync job for the connection is still pending,
    further notifications add nothing. A *running* job does not collapse,
    since it may have fetched before the new data landed.
    """
    if job_service.has_active_job(
        db,
        connection_id=connection.id,
        job_type=JobType.CONNECTION_SYNC,
        statuses=(JobStatus.PENDING.value,),
    ):
        return False

    job = job_service.schedule_job(
        db,
        job_type=JobType.CONNECTION_SYNC,
        workspace_id=connection.workspace_id,
        connection_id=connection.id,
        payload={
            "connection_id": str(connection.id),
            "trigger": SyncTrigger.WEBHOOK.value,
            "source": source,
        },
    )
    logger.info(
        "Queued webhook sync job %s",
        job.id,
        extra=build_log_context(
            workspace_id=connection.workspace_id,
            connection_id=connection.id,
            provider=connection.provider.value,
            trigger=SyncTrigger.WEBHOOK.value,
            job_id=job.id,
        ),
    )
    return True
