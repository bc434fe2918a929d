"""Channel sync job handlers."""

from __future__ import annotations

import functools
import logging
from datetime import datetime, timedelta, timezone

import anyio

from inbox_sync.core.structured_logging import build_log_context
from inbox_sync.db.enums import JobStatus, JobType, SyncTrigger
from inbox_sync.jobs.utils import uuid_from_payload
from inbox_sync.services import job_service, sync_service

logger = logging.getLogger(__name__)

# Delay before retrying a push-triggered sync whose lease was busy.
LEASE_BUSY_RETRY_SECONDS = 30


async def process_connection_sync(db, job) -> None:
    """
    Run a push-triggered sync through the connection lease.

    Provider failures are already recorded on the connection by the executor,
    so the job itself completes; the next cron sweep picks up from the
    committed cursor. A busy lease re-queues one delayed follow-up so the
    notification is not lost behind an in-flight sync that fetched too early.
    """
    connection_id = uuid_from_payload(job.payload, "connection_id")
    trigger = SyncTrigger((job.payload or {}).get("trigger") or SyncTrigger.WEBHOOK.value)
    log_extra = build_log_context(
        workspace_id=job.workspace_id,
        connection_id=connection_id,
        trigger=trigger.value,
        job_id=job.id,
    )

    # The executor and token refresh are sync code; keep the event loop free.
    outcome = await anyio.to_thread.run_sync(
        functools.partial(
            sync_service.sync_connection_with_lease,
            connection_id,
            trigger=trigger,
        )
    )

    if outcome.skipped_reason == sync_service.SKIP_LEASE_UNAVAILABLE:
        if not job_service.has_active_job(
            db,
            connection_id=connection_id,
            job_type=JobType.CONNECTION_SYNC,
            statuses=(JobStatus.PENDING.value,),
        ):
            job_service.schedule_job(
                db,
                job_type=JobType.CONNECTION_SYNC,
                workspace_id=job.workspace_id,
                connection_id=connection_id,
                payload={**(job.payload or {}), "source": "lease_busy_retry"},
                run_at=datetime.now(timezone.utc) + timedelta(seconds=LEASE_BUSY_RETRY_SECONDS),
            )
        logger.info("Lease busy for connection %s; sync re-queued", connection_id, extra=log_extra)
        return

    if outcome.error is not None:
        logger.warning(
            "Push-triggered sync for connection %s ended with %s",
            connection_id,
            outcome.error.kind.value,
            extra=log_extra,
        )
        return

    logger.info(
        "Push-triggered sync for connection %s: new=%s skipped=%s",
        connection_id,
        outcome.new_message_count,
        outcome.skipped_reason,
        extra=log_extra,
    )
