import uuid
from datetime import datetime, timedelta, timezone

import pytest

from inbox_sync.core.config import settings
from inbox_sync.db.enums import ChannelProvider, ConnectionStatus
from inbox_sync.services.providers.base import FetchResult, WebhookRegistration
from inbox_sync.services.providers.errors import TransientError


@pytest.mark.asyncio
async def test_internal_requires_secret(client):
    missing = await client.post("/internal/scheduled/sync-all")
    wrong = await client.post(
        "/internal/scheduled/sync-all", headers={"X-Internal-Secret": "nope"}
    )

    assert missing.status_code == 422
    assert wrong.status_code == 403


@pytest.mark.asyncio
async def test_internal_not_configured_returns_501(client, monkeypatch):
    monkeypatch.setattr(settings, "INTERNAL_SECRET", "")

    response = await client.post(
        "/internal/scheduled/sync-all", headers={"X-Internal-Secret": "anything"}
    )

    assert response.status_code == 501


@pytest.mark.asyncio
async def test_sync_all_endpoint_reports_partial_failure(client, db, make_connection, adapter_for, raw_message, internal_headers):
    ok = make_connection()
    failing = make_connection()
    adapter_for(ok).results = [FetchResult(messages=[raw_message("m1")], next_cursor="C1")]
    adapter_for(failing).results = [TransientError("provider 500", status_code=500)]

    response = await client.post(
        "/internal/scheduled/sync-all?auto_classify=false", headers=internal_headers
    )

    assert response.status_code == 200
    assert response.json() == {
        "workspaces_processed": 1,
        "connections_processed": 2,
        "total_new_messages": 1,
        "total_errors": 1,
        "skipped": 0,
    }


@pytest.mark.asyncio
async def test_sync_all_endpoint_workspace_scope_and_limit(client, db, make_connection, adapter_for, internal_headers):
    workspace = uuid.uuid4()
    inside = make_connection(workspace=workspace)
    make_connection(workspace=uuid.uuid4())

    response = await client.post(
        f"/internal/scheduled/sync-all?workspace_id={workspace}&max_messages=5",
        headers=internal_headers,
    )

    assert response.json()["connections_processed"] == 1
    assert adapter_for(inside).fetch_calls == [(None, 5)]


@pytest.mark.asyncio
async def test_sync_all_endpoint_validates_limit(client, internal_headers):
    response = await client.post(
        "/internal/scheduled/sync-all?max_messages=0", headers=internal_headers
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_renew_webhooks_endpoint(client, db, make_connection, adapter_for, internal_headers):
    soon = datetime.now(timezone.utc) + timedelta(hours=1)
    gmail = make_connection(ChannelProvider.GMAIL, webhook_expires_at=soon)
    adapter_for(gmail).registrations = [
        WebhookRegistration(expires_at=soon + timedelta(days=7))
    ]
    outlook = make_connection(ChannelProvider.OUTLOOK, webhook_expires_at=soon)
    adapter_for(outlook).registrations = [TransientError("graph timeout")]

    response = await client.post("/internal/scheduled/renew-webhooks", headers=internal_headers)

    assert response.status_code == 200
    assert response.json() == {
        "gmail": {"renewed": 1, "failed": 0, "disabled": 0},
        "outlook": {"renewed": 0, "failed": 1, "disabled": 0},
    }


@pytest.mark.asyncio
async def test_list_scheduled_tasks(client, internal_headers):
    response = await client.get("/internal/scheduled/tasks", headers=internal_headers)

    assert response.status_code == 200
    names = {task["name"] for task in response.json()}
    assert names == {"sync-all", "renew-webhooks"}


# =============================================================================
# Connection endpoints
# =============================================================================


@pytest.mark.asyncio
async def test_sync_status(client, db, make_connection, adapter_for, raw_message, internal_headers):
    connection = make_connection(status=ConnectionStatus.PENDING)
    adapter_for(connection).results = [
        FetchResult(messages=[raw_message("m1"), raw_message("m2")], next_cursor="C1")
    ]
    await client.post(f"/internal/connections/{connection.id}/sync", headers=internal_headers)
    db.expire_all()

    response = await client.get(
        f"/internal/connections/{connection.id}/sync-status", headers=internal_headers
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "active"
    assert body["message_count"] == 2
    assert body["consecutive_error_count"] == 0
    assert len(body["recent_runs"]) == 1
    assert body["recent_runs"][0]["trigger"] == "manual"
    assert "access_token_encrypted" not in body
    assert "sync_cursor" not in body


@pytest.mark.asyncio
async def test_sync_status_unknown_connection(client, internal_headers):
    response = await client.get(
        f"/internal/connections/{uuid.uuid4()}/sync-status", headers=internal_headers
    )

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_list_workspace_connections(client, db, make_connection, workspace_id, internal_headers):
    healthy = make_connection(last_sync_at=datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc))
    expired = make_connection(ChannelProvider.OUTLOOK, status=ConnectionStatus.AUTH_EXPIRED)
    gone = make_connection(ChannelProvider.SLACK, status=ConnectionStatus.DISCONNECTED)
    make_connection(workspace=uuid.uuid4())

    response = await client.get(
        f"/internal/connections?workspace_id={workspace_id}", headers=internal_headers
    )

    assert response.status_code == 200
    body = {item["id"]: item for item in response.json()}
    assert set(body) == {str(healthy.id), str(expired.id), str(gone.id)}
    assert body[str(healthy.id)]["status"] == "active"
    assert body[str(healthy.id)]["last_sync_at"].startswith("2026-03-01T08:00:00")
    assert body[str(expired.id)]["status"] == "auth_expired"
    assert body[str(gone.id)]["last_sync_at"] is None
    assert not any("token" in key for item in body.values() for key in item)


@pytest.mark.asyncio
async def test_list_workspace_connections_requires_workspace(client, internal_headers):
    response = await client.get("/internal/connections", headers=internal_headers)

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_list_workspace_connections_empty(client, internal_headers):
    response = await client.get(
        f"/internal/connections?workspace_id={uuid.uuid4()}", headers=internal_headers
    )

    assert response.status_code == 200
    assert response.json() == []


@pytest.mark.asyncio
async def test_sync_now_reports_error_outcome(client, db, make_connection, adapter_for, internal_headers):
    connection = make_connection()
    adapter_for(connection).results = [TransientError("upstream 502", status_code=502)]

    response = await client.post(
        f"/internal/connections/{connection.id}/sync", headers=internal_headers
    )

    assert response.status_code == 200
    body = response.json()
    assert body["error_kind"] == "transient"
    assert body["new_message_count"] == 0


@pytest.mark.asyncio
async def test_sync_now_unknown_connection(client, internal_headers):
    response = await client.post(
        f"/internal/connections/{uuid.uuid4()}/sync", headers=internal_headers
    )

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_disconnect_endpoint(client, db, make_connection, fake_adapter, internal_headers):
    errored = make_connection(status=ConnectionStatus.ERROR)
    active = make_connection(status=ConnectionStatus.ACTIVE)

    ok = await client.post(
        f"/internal/connections/{errored.id}/disconnect", headers=internal_headers
    )
    conflict = await client.post(
        f"/internal/connections/{active.id}/disconnect", headers=internal_headers
    )
    missing = await client.post(
        f"/internal/connections/{uuid.uuid4()}/disconnect", headers=internal_headers
    )

    assert ok.status_code == 200
    assert ok.json()["status"] == "disconnected"
    assert conflict.status_code == 409
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
