"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
Call from any external scheduler; the task names match `inbox-sync run-task`.
"""
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from inbox_sync import scheduling
from inbox_sync.core.deps import get_session_factory, verify_internal_secret


router = APIRouter(
    prefix="/internal/scheduled",
    tags=["internal"],
    dependencies=[Depends(verify_internal_secret)],
)


class SyncAllResponse(BaseModel):
    workspaces_processed: int
    connections_processed: int
    total_new_messages: int
    total_errors: int
    skipped: int


class RenewalResponse(BaseModel):
    renewed: int
    failed: int
    disabled: int


class RenewWebhooksResponse(BaseModel):
    gmail: RenewalResponse
    outlook: RenewalResponse


class ScheduledTaskRead(BaseModel):
    name: str
    description: str
    cadence: str


@router.get("/tasks", response_model=list[ScheduledTaskRead])
def list_scheduled_tasks():
    """Tasks an external scheduler is expected to trigger, with reference cadence."""
    return [
        ScheduledTaskRead(name=t.name, description=t.description, cadence=t.cadence)
        for t in scheduling.TASKS.values()
    ]


@router.post("/sync-all", response_model=SyncAllResponse)
def run_sync_all(
    workspace_id: UUID | None = Query(None),
    max_messages: int | None = Query(None, ge=1, le=500),
    auto_classify: bool | None = Query(None),
    session_factory=Depends(get_session_factory),
):
    """
    Incremental sync sweep (reference cadence: every 5 minutes).

    Scoped to one workspace when workspace_id is given - this doubles as the
    manual "sync now" for a workspace. Per-connection failures are counted in
    total_errors; the endpoint itself only fails on auth.
    """
    return scheduling.run_task(
        "sync-all",
        session_factory=session_factory,
        workspace_id=workspace_id,
        max_messages=max_messages,
        auto_classify=auto_classify,
    )


@router.post("/renew-webhooks", response_model=RenewWebhooksResponse)
def run_renew_webhooks(session_factory=Depends(get_session_factory)):
    """Renew expiring Gmail/Outlook push subscriptions (reference cadence: daily)."""
    return scheduling.run_task("renew-webhooks", session_factory=session_factory)
