"""Sync orchestrator - fan out executor runs across connections."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from inbox_sync.core.config import settings
from inbox_sync.db.enums import SyncTrigger
from inbox_sync.services import connection_service, sync_service

logger = logging.getLogger(__name__)


@dataclass
class SyncAllSummary:
    workspaces_processed: int = 0
    connections_processed: int = 0
    total_new_messages: int = 0
    total_errors: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def _default_session_factory() -> Callable[[], Session]:
    from inbox_sync.db.session import SessionLocal

    return SessionLocal


def sync_all(
    *,
    workspace_id: UUID | None = None,
    max_messages: int | None = None,
    auto_classify: bool | None = None,
    trigger: SyncTrigger = SyncTrigger.CRON,
    session_factory: Callable[[], Session] | None = None,
    concurrency: int | None = None,
) -> SyncAllSummary:
    """
    Sweep every syncable connection (optionally one workspace).

    Each connection runs on the bounded pool with its own session and lease.
    Individual failures are counted, never raised: one provider outage must
    not block unaffected connections.
    """
    session_factory = session_factory or _default_session_factory()
    concurrency = max(concurrency or settings.SYNC_CONCURRENCY, 1)

    with session_factory() as db:
        connections = connection_service.list_syncable_connections(db, workspace_id=workspace_id)
        targets = [(c.id, c.workspace_id) for c in connections]

    summary = SyncAllSummary(
        workspaces_processed=len({ws for _, ws in targets}),
        connections_processed=len(targets),
    )
    if not targets:
        return summary

    def _run(connection_id: UUID) -> sync_service.SyncOutcome:
        return sync_service.sync_connection_with_lease(
            connection_id,
            session_factory=session_factory,
            max_messages=max_messages,
            auto_classify=auto_classify,
            trigger=trigger,
        )

    with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="sync") as pool:
        futures = {pool.submit(_run, connection_id): connection_id for connection_id, _ in targets}
        for future in as_completed(futures):
            connection_id = futures[future]
            try:
                outcome = future.result()
            except Exception:
                logger.exception("Sync task crashed for connection %s", connection_id)
                summary.total_errors += 1
                continue
            summary.total_new_messages += outcome.new_message_count
            if outcome.error is not None:
                summary.total_errors += 1
            elif outcome.skipped_reason:
                summary.skipped += 1

    logger.info(
        "Sync sweep complete: workspaces=%s connections=%s new=%s errors=%s skipped=%s",
        summary.workspaces_processed,
        summary.connections_processed,
        summary.total_new_messages,
        summary.total_errors,
        summary.skipped,
    )
    return summary


def sync_connection_now(
    connection_id: UUID,
    *,
    max_messages: int | None = None,
    session_factory: Callable[[], Session] | None = None,
) -> sync_service.SyncOutcome:
    """Manual "sync now" for a single connection."""
    return sync_service.sync_connection_with_lease(
        connection_id,
        session_factory=session_factory or _default_session_factory(),
        max_messages=max_messages,
        trigger=SyncTrigger.MANUAL,
    )
