"""Message store - deduplicated upsert into the unified inbox."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from inbox_sync.db.models import ChannelConnection, Message
from inbox_sync.services.providers.base import RawMessage

_DEDUP_KEY = ["connection_id", "provider_message_id"]


@dataclass
class UpsertResult:
    inserted_ids: list[UUID] = field(default_factory=list)
    updated_count: int = 0

    @property
    def inserted_count(self) -> int:
        return len(self.inserted_ids)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _dialect_insert(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"Unsupported database dialect for message upsert: {dialect}")


def upsert_message(
    db: Session,
    connection: ChannelConnection,
    raw: RawMessage,
) -> tuple[UUID | None, bool]:
    """
    Insert-or-update one message on the (connection_id, provider_message_id) key.

    Two statements, each atomic on its own: INSERT ... ON CONFLICT DO NOTHING
    decides whether this delivery is the first sighting; if not, only the
    mutable fields (labels, read flag, snippet) are refreshed. Concurrent
    re-delivery therefore never produces a second row.

    Returns (inserted message id or None, inserted flag). Caller commits.
    """
    now = _now_utc()
    insert = _dialect_insert(db)
    stmt = (
        insert(Message)
        .values(
            id=uuid.uuid4(),
            workspace_id=connection.workspace_id,
            connection_id=connection.id,
            provider_message_id=raw.provider_message_id,
            thread_id=raw.thread_id,
            sender_email=raw.sender_email,
            sender_name=raw.sender_name,
            recipients=list(raw.recipients),
            subject=raw.subject,
            body=raw.body,
            snippet=raw.snippet,
            timestamp=raw.timestamp,
            labels=list(raw.labels),
            is_read=raw.is_read,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=_DEDUP_KEY)
        .returning(Message.id)
    )
    inserted_id = db.execute(stmt).scalar_one_or_none()
    if inserted_id is not None:
        return inserted_id, True

    db.execute(
        update(Message)
        .where(
            Message.connection_id == connection.id,
            Message.provider_message_id == raw.provider_message_id,
        )
        .values(
            labels=list(raw.labels),
            is_read=raw.is_read,
            snippet=raw.snippet,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return None, False


def upsert_messages(
    db: Session,
    connection: ChannelConnection,
    raws: list[RawMessage],
) -> UpsertResult:
    result = UpsertResult()
    for raw in raws:
        message_id, inserted = upsert_message(db, connection, raw)
        if inserted:
            result.inserted_ids.append(message_id)
        else:
            result.updated_count += 1
    return result


def get_message(db: Session, message_id: UUID) -> Message | None:
    return db.query(Message).filter(Message.id == message_id).first()


def list_messages(db: Session, *, connection_id: UUID, limit: int = 100) -> list[Message]:
    return (
        db.query(Message)
        .filter(Message.connection_id == connection_id)
        .order_by(Message.timestamp.desc())
        .limit(limit)
        .all()
    )


def count_messages(db: Session, *, connection_id: UUID) -> int:
    return (
        db.query(func.count(Message.id))
        .filter(Message.connection_id == connection_id)
        .scalar()
        or 0
    )


def apply_classification(
    db: Session,
    message: Message,
    *,
    priority: str,
    category: str,
) -> Message:
    """Store classifier output. Re-applying the same result is harmless."""
    message.priority = priority
    message.category = category
    message.classified_at = _now_utc()
    db.commit()
    db.refresh(message)
    return message
