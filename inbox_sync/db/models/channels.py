"""Channel connection, unified message, and sync coordination ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from inbox_sync.db.base import Base, JSONType
from inbox_sync.db.enums import (
    DEFAULT_CONNECTION_STATUS,
    ChannelProvider,
    ConnectionStatus,
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _enum_type(enum_cls, *, name: str) -> Enum:
    """Bind Python str-enums to their value strings (native enum on PostgreSQL)."""
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


class ChannelConnection(Base):
    """
    One authenticated binding between a workspace and a provider mailbox/channel.

    Created by the OAuth callback (external) through
    ``connection_service.register_connection``; never hard-deleted, only moved
    to ``disconnected``.
    """

    __tablename__ = "channel_connections"
    __table_args__ = (
        UniqueConstraint(
            "workspace_id",
            "provider",
            "provider_account_id",
            name="uq_channel_connection_account",
        ),
        Index("idx_channel_connections_workspace_status", "workspace_id", "status"),
        Index("idx_channel_connections_webhook_expiry", "provider", "webhook_expires_at"),
        Index("idx_channel_connections_subscription", "webhook_subscription_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    provider: Mapped[ChannelProvider] = mapped_column(
        _enum_type(ChannelProvider, name="channel_provider"), nullable=False
    )
    provider_account_id: Mapped[str] = mapped_column(String(320), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[ConnectionStatus] = mapped_column(
        _enum_type(ConnectionStatus, name="connection_status"),
        nullable=False,
        default=DEFAULT_CONNECTION_STATUS,
    )

    # OAuth tokens (Fernet-encrypted, supplied by the external OAuth flow)
    access_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Sync progress - written only by the executor holding the lease
    sync_cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(nullable=True)
    consecutive_error_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Push subscription
    webhook_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    webhook_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    webhook_client_state: Mapped[str | None] = mapped_column(String(255), nullable=True)
    webhook_renewal_failures: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    webhook_last_renewed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    webhook_last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Provider-specific settings (e.g. Slack channel ids)
    provider_config: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    disconnected_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        nullable=False, default=_now_utc, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False, default=_now_utc, onupdate=_now_utc, server_default=func.now()
    )


class Message(Base):
    """Unified, deduplicated provider message keyed by (connection, native id)."""

    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint(
            "connection_id", "provider_message_id", name="uq_message_provider_id"
        ),
        Index("idx_messages_workspace_timestamp", "workspace_id", "timestamp"),
        Index("idx_messages_connection_thread", "connection_id", "thread_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    connection_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("channel_connections.id", ondelete="CASCADE"), nullable=False
    )
    provider_message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    thread_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    sender_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    sender_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    recipients: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    snippet: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(nullable=False)
    labels: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Classification (populated asynchronously)
    priority: Mapped[str | None] = mapped_column(String(20), nullable=True)
    category: Mapped[str | None] = mapped_column(String(30), nullable=True)
    classified_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        nullable=False, default=_now_utc, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False, default=_now_utc, onupdate=_now_utc, server_default=func.now()
    )


class SyncLease(Base):
    """
    Mutual-exclusion record for one in-flight sync.

    The primary key on connection_id is what makes acquisition atomic; a row
    past ``expires_at`` is treated as absent and may be reclaimed.
    """

    __tablename__ = "sync_leases"

    connection_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("channel_connections.id", ondelete="CASCADE"), primary_key=True
    )
    holder_token: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)


class SyncRun(Base):
    """Append-only history of executor runs (backs the sync-status endpoint)."""

    __tablename__ = "sync_runs"
    __table_args__ = (
        Index("idx_sync_runs_connection_started", "connection_id", "started_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    connection_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("channel_connections.id", ondelete="CASCADE"), nullable=False
    )
    trigger: Mapped[str] = mapped_column(String(20), nullable=False)
    started_at: Mapped[datetime] = mapped_column(nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(nullable=True)
    passes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    new_message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_kind: Mapped[str | None] = mapped_column(String(30), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
