"""Pydantic schemas for connection sync status."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from inbox_sync.db.enums import ChannelProvider, ConnectionStatus, SyncErrorKind


class SyncRunRead(BaseModel):
    id: UUID
    trigger: str
    started_at: datetime
    finished_at: datetime | None = None
    passes: int
    new_message_count: int
    updated_message_count: int
    skipped_message_count: int
    error_kind: str | None = None
    error_message: str | None = None

    model_config = {"from_attributes": True}


class ConnectionSummary(BaseModel):
    """Connection health as shown to operators (never includes tokens)."""

    id: UUID
    workspace_id: UUID
    provider: ChannelProvider
    provider_account_id: str
    display_name: str | None = None
    status: ConnectionStatus
    last_sync_at: datetime | None = None
    consecutive_error_count: int
    last_sync_error: str | None = None
    webhook_expires_at: datetime | None = None
    webhook_last_error: str | None = None

    model_config = {"from_attributes": True}


class ConnectionSyncStatus(ConnectionSummary):
    webhook_renewal_failures: int
    webhook_last_renewed_at: datetime | None = None
    message_count: int = 0
    recent_runs: list[SyncRunRead] = []


class SyncOutcomeRead(BaseModel):
    connection_id: UUID
    new_message_count: int
    updated_message_count: int
    skipped_message_count: int
    passes: int
    cursor_advanced: bool
    skipped_reason: str | None = None
    error_kind: SyncErrorKind | None = None
    error_message: str | None = None
    retry_after: int | None = None


class DisconnectResponse(BaseModel):
    id: UUID
    status: ConnectionStatus
    disconnected_at: datetime | None = None
