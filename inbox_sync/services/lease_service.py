"""Sync coordinator - per-connection leases with a hard TTL."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable
from uuid import UUID

from sqlalchemy import delete, exists, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from inbox_sync.core.config import settings
from inbox_sync.db.models import SyncLease

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lease:
    connection_id: UUID
    holder_token: str
    acquired_at: datetime
    expires_at: datetime


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _dialect_insert(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"Unsupported database dialect for leases: {dialect}")


def try_acquire(
    db: Session,
    connection_id: UUID,
    *,
    ttl: timedelta | None = None,
    now: datetime | None = None,
) -> Lease | None:
    """
    Non-blocking lease acquisition.

    1. INSERT ... ON CONFLICT DO NOTHING - wins when no lease row exists.
    2. Otherwise UPDATE ... WHERE expires_at <= now - reclaims a stale lease.

    Each step is a single statement, so two concurrent callers can never both
    succeed. Returns None when a live lease is held elsewhere.
    """
    now = now or _now_utc()
    ttl = ttl or timedelta(seconds=settings.SYNC_LEASE_TTL_SECONDS)
    lease = Lease(
        connection_id=connection_id,
        holder_token=secrets.token_hex(16),
        acquired_at=now,
        expires_at=now + ttl,
    )
    values = {
        "holder_token": lease.holder_token,
        "acquired_at": lease.acquired_at,
        "expires_at": lease.expires_at,
    }

    insert = _dialect_insert(db)
    inserted = db.execute(
        insert(SyncLease)
        .values(connection_id=connection_id, **values)
        .on_conflict_do_nothing(index_elements=["connection_id"])
        .returning(SyncLease.connection_id)
    ).scalar_one_or_none()
    if inserted is not None:
        db.commit()
        return lease

    reclaimed = db.execute(
        update(SyncLease)
        .where(SyncLease.connection_id == connection_id, SyncLease.expires_at <= now)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if reclaimed.rowcount == 1:
        logger.info("Reclaimed expired sync lease for connection %s", connection_id)
        return lease
    return None


def release(db: Session, lease: Lease) -> bool:
    """Drop the lease if we still hold it. Returns False if it was reclaimed."""
    result = db.execute(
        delete(SyncLease)
        .where(
            SyncLease.connection_id == lease.connection_id,
            SyncLease.holder_token == lease.holder_token,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def lease_held_clause(lease: Lease, *, now: datetime | None = None):
    """SQL predicate: this lease row still exists, is ours, and is unexpired.

    Embedded in the executor's cursor UPDATE so the check and the write are
    one statement.
    """
    now = now or _now_utc()
    return exists(
        select(SyncLease.connection_id).where(
            SyncLease.connection_id == lease.connection_id,
            SyncLease.holder_token == lease.holder_token,
            SyncLease.expires_at > now,
        )
    )


def is_held(db: Session, lease: Lease, *, now: datetime | None = None) -> bool:
    return bool(db.execute(select(lease_held_clause(lease, now=now))).scalar())


def run_with_lease(
    connection_id: UUID,
    fn: Callable[[Session, Lease], object],
    *,
    session_factory: Callable[[], Session],
    on_unavailable: Callable[[], object],
    ttl: timedelta | None = None,
):
    """Acquire, run ``fn(db, lease)``, and always release.

    Failure to acquire is not an error: ``on_unavailable()`` supplies the
    caller's skip result.
    """
    with session_factory() as db:
        lease = try_acquire(db, connection_id, ttl=ttl)
        if lease is None:
            logger.info("Sync lease unavailable for connection %s; skipping", connection_id)
            return on_unavailable()
        try:
            return fn(db, lease)
        finally:
            db.rollback()
            if not release(db, lease):
                logger.warning(
                    "Sync lease for connection %s expired before release", connection_id
                )
