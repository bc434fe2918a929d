"""Job handler registry."""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from inbox_sync.db.enums import JobType
from inbox_sync.jobs.handlers import classify, sync, webhooks

JobHandler = Callable[[object, object], Awaitable[None]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobType.CONNECTION_SYNC.value: sync.process_connection_sync,
    JobType.MESSAGE_CLASSIFY.value: classify.process_message_classify,
    JobType.WEBHOOK_REGISTER.value: webhooks.process_webhook_register,
}


def resolve_job_handler(job_type: str) -> JobHandler:
    handler = JOB_HANDLERS.get(job_type)
    if not handler:
        raise ValueError(f"Unknown job type: {job_type}")
    return handler
