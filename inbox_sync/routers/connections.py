"""Connection status and operator actions (internal)."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from inbox_sync.core.deps import get_db, get_session_factory, verify_internal_secret
from inbox_sync.schemas.connection import (
    ConnectionSummary,
    ConnectionSyncStatus,
    DisconnectResponse,
    SyncOutcomeRead,
    SyncRunRead,
)
from inbox_sync.services import (
    connection_service,
    message_service,
    orchestrator_service,
    sync_service,
)

router = APIRouter(
    prefix="/internal/connections",
    tags=["connections"],
    dependencies=[Depends(verify_internal_secret)],
)


@router.get("", response_model=list[ConnectionSummary])
def list_connections(
    workspace_id: UUID = Query(...),
    db: Session = Depends(get_db),
):
    """Sync health of every connection in a workspace, disconnected ones included."""
    return connection_service.list_workspace_connections(db, workspace_id)


@router.get("/{connection_id}/sync-status", response_model=ConnectionSyncStatus)
def get_sync_status(
    connection_id: UUID,
    runs: int = Query(10, ge=0, le=100),
    db: Session = Depends(get_db),
):
    connection = connection_service.get_connection(db, connection_id)
    if connection is None:
        raise HTTPException(status_code=404, detail="Connection not found")

    status = ConnectionSyncStatus.model_validate(connection)
    status.message_count = message_service.count_messages(db, connection_id=connection.id)
    status.recent_runs = [
        SyncRunRead.model_validate(run)
        for run in sync_service.list_recent_runs(db, connection.id, limit=runs)
    ]
    return status


@router.post("/{connection_id}/sync", response_model=SyncOutcomeRead)
def sync_now(
    connection_id: UUID,
    max_messages: int | None = Query(None, ge=1, le=500),
    session_factory=Depends(get_session_factory),
):
    """
    Manual "sync now" for one connection.

    Runs through the same lease as cron/webhook syncs; a concurrent sync
    shows up as skipped_reason=lease_unavailable rather than an error.
    """
    outcome = orchestrator_service.sync_connection_now(
        connection_id, max_messages=max_messages, session_factory=session_factory
    )
    if outcome.skipped_reason == sync_service.SKIP_NOT_FOUND:
        raise HTTPException(status_code=404, detail="Connection not found")
    return SyncOutcomeRead(
        connection_id=outcome.connection_id,
        new_message_count=outcome.new_message_count,
        updated_message_count=outcome.updated_message_count,
        skipped_message_count=outcome.skipped_message_count,
        passes=outcome.passes,
        cursor_advanced=outcome.cursor_advanced,
        skipped_reason=outcome.skipped_reason,
        error_kind=outcome.error.kind if outcome.error else None,
        error_message=outcome.error.message if outcome.error else None,
        retry_after=outcome.error.retry_after if outcome.error else None,
    )


@router.post("/{connection_id}/disconnect", response_model=DisconnectResponse)
def disconnect(connection_id: UUID, db: Session = Depends(get_db)):
    try:
        connection = connection_service.disconnect_connection(db, connection_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Connection not found")
    except connection_service.InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return DisconnectResponse(
        id=connection.id,
        status=connection.status,
        disconnected_at=connection.disconnected_at,
    )
