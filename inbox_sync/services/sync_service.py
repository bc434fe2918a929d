"""Sync executor - one bounded, idempotent sync of a single connection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inbox_sync.core.config import settings
from inbox_sync.core.structured_logging import build_log_context
from inbox_sync.db.enums import ConnectionStatus, JobType, SyncErrorKind, SyncTrigger
from inbox_sync.db.models import ChannelConnection, SyncRun
from inbox_sync.services import connection_service, job_service, lease_service, message_service
from inbox_sync.services.lease_service import Lease
from inbox_sync.services.providers import registry as provider_registry
from inbox_sync.services.providers.base import ProviderAdapter
from inbox_sync.services.providers.errors import ProviderError, RateLimitedError

logger = logging.getLogger(__name__)

SKIP_INACTIVE = "inactive"
SKIP_NOT_FOUND = "not_found"
SKIP_LEASE_UNAVAILABLE = "lease_unavailable"


@dataclass
class SyncError:
    kind: SyncErrorKind
    message: str
    retry_after: int | None = None


@dataclass
class SyncOutcome:
    connection_id: UUID
    new_message_count: int = 0
    updated_message_count: int = 0
    skipped_message_count: int = 0
    passes: int = 0
    cursor_advanced: bool = False
    skipped_reason: str | None = None
    error: SyncError | None = None
    new_message_ids: list[UUID] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


class LeaseLostError(Exception):
    """The lease expired or was reclaimed before the cursor write."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Connection bookkeeping
# =============================================================================


def _persist_pass(
    db: Session,
    connection: ChannelConnection,
    lease: Lease,
    *,
    next_cursor: str,
    now: datetime,
) -> None:
    """Write cursor + success bookkeeping, conditional on still holding the lease."""
    values: dict[str, object] = {
        "sync_cursor": next_cursor,
        "last_sync_at": now,
        "consecutive_error_count": 0,
        "last_sync_error": None,
        "updated_at": now,
    }
    current = ConnectionStatus(connection.status)
    if connection_service.can_transition(current, ConnectionStatus.ACTIVE):
        values["status"] = ConnectionStatus.ACTIVE

    result = db.execute(
        update(ChannelConnection)
        .where(
            ChannelConnection.id == connection.id,
            lease_service.lease_held_clause(lease, now=now),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise LeaseLostError(f"Lease lost for connection {connection.id}")
    if "status" in values:
        logger.info(
            "Connection %s status %s -> active", connection.id, current.value
        )


def _record_failure(
    db: Session,
    connection: ChannelConnection,
    lease: Lease,
    exc: ProviderError,
) -> bool:
    """
    Apply the error taxonomy to the connection's counters and status.

    Written with the same lease check as the cursor, so an executor that
    outlived its lease cannot touch a connection another holder is syncing.
    Returns False when the lease was gone and nothing was written.
    """
    now = _now_utc()
    current = ConnectionStatus(connection.status)
    values: dict[str, object] = {"last_sync_error": str(exc)[:500], "updated_at": now}

    target = None
    if exc.kind == SyncErrorKind.AUTH_EXPIRED:
        target = ConnectionStatus.AUTH_EXPIRED
    elif exc.retryable:
        count = (connection.consecutive_error_count or 0) + 1
        values["consecutive_error_count"] = count
        if count > settings.SYNC_ERROR_THRESHOLD:
            target = ConnectionStatus.ERROR
    # Permanent: logged and skipped; counter and cursor untouched.

    if target is not None and target != current:
        if connection_service.can_transition(current, target):
            values["status"] = target
        else:
            logger.warning(
                "Ignoring transition for connection %s: %s -> %s",
                connection.id,
                current.value,
                target.value,
            )

    result = db.execute(
        update(ChannelConnection)
        .where(
            ChannelConnection.id == connection.id,
            lease_service.lease_held_clause(lease, now=now),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        logger.warning(
            "Lease lost for connection %s; failure bookkeeping dropped", connection.id
        )
        return False
    db.commit()
    db.refresh(connection)
    if "status" in values:
        logger.info(
            "Connection %s status %s -> %s", connection.id, current.value, target.value
        )
    return True


def _record_run(
    db: Session,
    outcome: SyncOutcome,
    *,
    trigger: SyncTrigger,
    started_at: datetime,
) -> None:
    db.add(
        SyncRun(
            connection_id=outcome.connection_id,
            trigger=trigger.value,
            started_at=started_at,
            finished_at=_now_utc(),
            passes=outcome.passes,
            new_message_count=outcome.new_message_count,
            updated_message_count=outcome.updated_message_count,
            skipped_message_count=outcome.skipped_message_count,
            error_kind=outcome.error.kind.value if outcome.error else None,
            error_message=outcome.error.message[:500] if outcome.error else None,
        )
    )
    db.commit()


def _forward_to_classifier(db: Session, connection: ChannelConnection, message_ids: list[UUID]) -> None:
    """Queue best-effort classification; never fails the sync."""
    for message_id in message_ids:
        try:
            job_service.schedule_job(
                db,
                job_type=JobType.MESSAGE_CLASSIFY,
                workspace_id=connection.workspace_id,
                connection_id=connection.id,
                payload={"message_id": str(message_id)},
                idempotency_key=f"message_classify:{message_id}",
                max_attempts=1,
            )
        except IntegrityError:
            db.rollback()
        except Exception:
            db.rollback()
            logger.exception("Failed to queue classification for message %s", message_id)


# =============================================================================
# Executor
# =============================================================================


def run_connection_sync(
    db: Session,
    connection_id: UUID,
    *,
    lease: Lease,
    max_messages: int | None = None,
    auto_classify: bool | None = None,
    trigger: SyncTrigger = SyncTrigger.CRON,
    adapter: ProviderAdapter | None = None,
) -> SyncOutcome:
    """
    Run one sync of a connection while holding ``lease``.

    Each pass: fetch -> upsert -> conditional cursor write -> commit. A pass
    that fails rolls back entirely, so the cursor never moves past messages
    that were not stored. At most ``SYNC_MAX_EXTRA_PASSES`` follow-up passes
    run when the provider reports more data.

    Never raises for provider failures; the outcome carries a structured error.
    """
    max_messages = max_messages or settings.SYNC_MAX_MESSAGES
    if auto_classify is None:
        auto_classify = settings.SYNC_AUTO_CLASSIFY
    outcome = SyncOutcome(connection_id=connection_id)

    connection = connection_service.get_connection(db, connection_id)
    if connection is None:
        outcome.skipped_reason = SKIP_NOT_FOUND
        return outcome
    if ConnectionStatus(connection.status) not in connection_service.SYNCABLE_STATUSES:
        outcome.skipped_reason = SKIP_INACTIVE
        return outcome

    log_extra = build_log_context(
        workspace_id=connection.workspace_id,
        connection_id=connection.id,
        provider=connection.provider.value,
        trigger=trigger.value,
    )
    started_at = _now_utc()
    adapter = adapter or provider_registry.get_adapter(db, connection)
    max_passes = 1 + max(settings.SYNC_MAX_EXTRA_PASSES, 0)

    try:
        while outcome.passes < max_passes:
            cursor = connection.sync_cursor
            result = adapter.fetch_changes(cursor, max_messages)
            upserted = message_service.upsert_messages(db, connection, result.messages)

            now = _now_utc()
            _persist_pass(db, connection, lease, next_cursor=result.next_cursor, now=now)
            db.commit()
            db.refresh(connection)

            outcome.passes += 1
            outcome.new_message_count += upserted.inserted_count
            outcome.updated_message_count += upserted.updated_count
            outcome.skipped_message_count += result.skipped
            outcome.new_message_ids.extend(upserted.inserted_ids)
            if result.next_cursor != cursor:
                outcome.cursor_advanced = True

            if not result.has_more:
                break
    except ProviderError as exc:
        db.rollback()
        db.refresh(connection)
        outcome.error = SyncError(
            kind=exc.kind,
            message=str(exc),
            retry_after=exc.retry_after if isinstance(exc, RateLimitedError) else None,
        )
        _record_failure(db, connection, lease, exc)
        logger.warning("Sync failed for connection %s: %s", connection.id, exc, extra=log_extra)
    except LeaseLostError as exc:
        db.rollback()
        outcome.error = SyncError(kind=SyncErrorKind.LEASE_LOST, message=str(exc))
        logger.warning("Sync aborted for connection %s: %s", connection.id, exc, extra=log_extra)
    except Exception as exc:
        # Contained at the connection boundary so sibling syncs keep going.
        db.rollback()
        outcome.error = SyncError(kind=SyncErrorKind.INTERNAL, message=str(exc)[:500])
        logger.exception("Unexpected sync failure for connection %s", connection_id, extra=log_extra)

    if auto_classify and outcome.new_message_ids and settings.classifier_enabled:
        _forward_to_classifier(db, connection, outcome.new_message_ids)

    _record_run(db, outcome, trigger=trigger, started_at=started_at)
    logger.info(
        "Synced connection %s: new=%s updated=%s passes=%s",
        connection.id,
        outcome.new_message_count,
        outcome.updated_message_count,
        outcome.passes,
        extra=log_extra,
    )
    return outcome


def sync_connection_with_lease(
    connection_id: UUID,
    *,
    session_factory=None,
    max_messages: int | None = None,
    auto_classify: bool | None = None,
    trigger: SyncTrigger = SyncTrigger.CRON,
) -> SyncOutcome:
    """Coordinator entry point: acquire lease, run the executor, release."""
    if session_factory is None:
        from inbox_sync.db.session import SessionLocal

        session_factory = SessionLocal

    return lease_service.run_with_lease(
        connection_id,
        lambda db, lease: run_connection_sync(
            db,
            connection_id,
            lease=lease,
            max_messages=max_messages,
            auto_classify=auto_classify,
            trigger=trigger,
        ),
        session_factory=session_factory,
        on_unavailable=lambda: SyncOutcome(
            connection_id=connection_id, skipped_reason=SKIP_LEASE_UNAVAILABLE
        ),
    )


def list_recent_runs(db: Session, connection_id: UUID, *, limit: int = 10) -> list[SyncRun]:
    return (
        db.query(SyncRun)
        .filter(SyncRun.connection_id == connection_id)
        .order_by(SyncRun.started_at.desc())
        .limit(limit)
        .all()
    )
