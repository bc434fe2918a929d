"""
Scheduled tasks invoked by an external scheduler.

Any dispatcher (platform cron, GitHub Actions, Cloud Scheduler, a plain
crontab running the CLI) triggers these by name through
``POST /internal/scheduled/{name}`` or ``inbox-sync run-task {name}``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.orm import Session

from inbox_sync.db.enums import SyncTrigger
from inbox_sync.services import orchestrator_service, webhook_renewal_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledTask:
    name: str
    description: str
    cadence: str  # Reference cadence for the external scheduler
    run: Callable[..., dict[str, Any]]


def _run_sync_all(
    *,
    session_factory: Callable[[], Session],
    workspace_id: UUID | None = None,
    max_messages: int | None = None,
    auto_classify: bool | None = None,
    **_: Any,
) -> dict[str, Any]:
    summary = orchestrator_service.sync_all(
        workspace_id=workspace_id,
        max_messages=max_messages,
        auto_classify=auto_classify,
        trigger=SyncTrigger.CRON,
        session_factory=session_factory,
    )
    return summary.to_dict()


def _run_renew_webhooks(*, session_factory: Callable[[], Session], **_: Any) -> dict[str, Any]:
    with session_factory() as db:
        results = webhook_renewal_service.renew_all_expiring(db)
    return {provider: summary.to_dict() for provider, summary in results.items()}


TASKS: dict[str, ScheduledTask] = {
    "sync-all": ScheduledTask(
        name="sync-all",
        description="Incremental sync of every syncable connection",
        cadence="*/5 * * * *",
        run=_run_sync_all,
    ),
    "renew-webhooks": ScheduledTask(
        name="renew-webhooks",
        description="Renew Gmail/Outlook push subscriptions nearing expiry",
        cadence="0 3 * * *",
        run=_run_renew_webhooks,
    ),
}


def get_task(name: str) -> ScheduledTask:
    task = TASKS.get(name)
    if not task:
        raise KeyError(f"Unknown scheduled task: {name}")
    return task


def run_task(name: str, *, session_factory: Callable[[], Session] | None = None, **options: Any) -> dict[str, Any]:
    """Run a scheduled task by name. Partial failures are reported in the result, not raised."""
    task = get_task(name)
    if session_factory is None:
        from inbox_sync.db.session import SessionLocal

        session_factory = SessionLocal
    logger.info("Running scheduled task %s", name)
    return task.run(session_factory=session_factory, **options)
