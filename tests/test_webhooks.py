from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time

import pytest

from inbox_sync.core.config import settings
from inbox_sync.db.enums import ChannelProvider, ConnectionStatus, JobStatus, JobType
from inbox_sync.db.models import Job
from inbox_sync.services.webhooks.slack import verify_slack_signature


def _gmail_push(email_address: str, history_id: str = "12345") -> dict:
    message = {"emailAddress": email_address, "historyId": history_id}
    encoded = base64.urlsafe_b64encode(json.dumps(message).encode("utf-8")).decode("utf-8")
    return {
        "message": {"data": encoded, "messageId": "pubsub-1"},
        "subscription": "projects/test/subscriptions/gmail-push",
    }


def _sync_jobs(db) -> list[Job]:
    db.expire_all()
    return db.query(Job).filter(Job.job_type == JobType.CONNECTION_SYNC.value).all()


# =============================================================================
# Gmail
# =============================================================================


@pytest.mark.asyncio
async def test_gmail_push_queues_sync_job(client, db, make_connection):
    connection = make_connection(account_id="inbox@example.com")

    response = await client.post("/webhooks/gmail", json=_gmail_push("Inbox@Example.com", "777"))

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "accepted"
    assert body["queued"] == 1
    assert body["history_id"] == "777"
    jobs = _sync_jobs(db)
    assert len(jobs) == 1
    assert jobs[0].connection_id == connection.id
    assert jobs[0].payload["trigger"] == "webhook"
    assert jobs[0].payload["source"] == "gmail_push"


@pytest.mark.asyncio
async def test_gmail_push_burst_collapses_while_pending(client, db, make_connection):
    make_connection(account_id="burst@example.com")

    first = await client.post("/webhooks/gmail", json=_gmail_push("burst@example.com", "1"))
    second = await client.post("/webhooks/gmail", json=_gmail_push("burst@example.com", "2"))

    assert first.json()["queued"] == 1
    assert second.status_code == 202
    assert second.json()["queued"] == 0
    assert len(_sync_jobs(db)) == 1


@pytest.mark.asyncio
async def test_gmail_push_requeues_once_previous_job_running(client, db, make_connection):
    make_connection(account_id="running@example.com")
    await client.post("/webhooks/gmail", json=_gmail_push("running@example.com"))
    job = _sync_jobs(db)[0]
    job.status = JobStatus.RUNNING.value
    db.commit()

    response = await client.post("/webhooks/gmail", json=_gmail_push("running@example.com"))

    assert response.json()["queued"] == 1
    assert len(_sync_jobs(db)) == 2


@pytest.mark.asyncio
async def test_gmail_push_unknown_mailbox_is_acknowledged(client, db):
    response = await client.post("/webhooks/gmail", json=_gmail_push("nobody@example.com"))

    assert response.status_code == 202
    assert response.json() == {"status": "ignored", "reason": "connection_not_found"}
    assert _sync_jobs(db) == []


@pytest.mark.asyncio
async def test_gmail_push_for_disconnected_mailbox_is_dropped(client, db, make_connection):
    make_connection(account_id="gone@example.com", status=ConnectionStatus.DISCONNECTED)

    response = await client.post("/webhooks/gmail", json=_gmail_push("gone@example.com"))

    assert response.json()["status"] == "ignored"
    assert _sync_jobs(db) == []


@pytest.mark.asyncio
async def test_gmail_push_malformed_data_is_acknowledged(client, db):
    response = await client.post(
        "/webhooks/gmail", json={"message": {"data": "%%%not-base64%%%"}}
    )

    assert response.status_code == 202
    assert response.json()["status"] == "ignored"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "envelope",
    [{"message": "not-an-object"}, {"message": ["data"]}, ["message"], {}],
)
async def test_gmail_push_non_object_message_is_acknowledged(client, db, envelope):
    response = await client.post("/webhooks/gmail", json=envelope)

    assert response.status_code == 202
    assert response.json() == {"status": "ignored", "reason": "invalid_envelope"}
    assert _sync_jobs(db) == []


@pytest.mark.asyncio
async def test_gmail_push_invalid_json(client):
    response = await client.post(
        "/webhooks/gmail", content=b"{nope", headers={"content-type": "application/json"}
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_gmail_push_verification_token(client, db, make_connection, monkeypatch):
    monkeypatch.setattr(settings, "GMAIL_PUSH_VERIFICATION_TOKEN", "push-secret")
    make_connection(account_id="token@example.com")

    denied = await client.post("/webhooks/gmail?token=wrong", json=_gmail_push("token@example.com"))
    allowed = await client.post(
        "/webhooks/gmail?token=push-secret", json=_gmail_push("token@example.com")
    )

    assert denied.status_code == 403
    assert allowed.status_code == 202


# =============================================================================
# Outlook
# =============================================================================


@pytest.mark.asyncio
async def test_outlook_validation_handshake(client):
    response = await client.post("/webhooks/outlook?validationToken=abc%20123")

    assert response.status_code == 200
    assert response.text == "abc 123"
    assert response.headers["content-type"].startswith("text/plain")


@pytest.mark.asyncio
async def test_outlook_notification_queues_sync(client, db, make_connection):
    connection = make_connection(
        ChannelProvider.OUTLOOK,
        webhook_subscription_id="sub-1",
        webhook_client_state="state-1",
    )
    notification = {"subscriptionId": "sub-1", "clientState": "state-1", "changeType": "created"}

    response = await client.post(
        "/webhooks/outlook", json={"value": [notification, dict(notification, changeType="updated")]}
    )

    assert response.status_code == 202
    assert response.json() == {"status": "accepted", "queued": 1, "ignored": 0}
    jobs = _sync_jobs(db)
    assert len(jobs) == 1
    assert jobs[0].connection_id == connection.id


@pytest.mark.asyncio
async def test_outlook_client_state_mismatch_is_dropped(client, db, make_connection):
    make_connection(
        ChannelProvider.OUTLOOK,
        webhook_subscription_id="sub-2",
        webhook_client_state="expected",
    )

    response = await client.post(
        "/webhooks/outlook",
        json={"value": [{"subscriptionId": "sub-2", "clientState": "forged"}]},
    )

    assert response.status_code == 202
    assert response.json() == {"status": "ignored", "ignored": 1}
    assert _sync_jobs(db) == []


@pytest.mark.asyncio
async def test_outlook_unknown_subscription_is_dropped(client, db):
    response = await client.post(
        "/webhooks/outlook",
        json={"value": [{"subscriptionId": "missing", "clientState": "x"}]},
    )

    assert response.status_code == 202
    assert response.json()["status"] == "ignored"


@pytest.mark.asyncio
async def test_outlook_non_object_entries_are_skipped(client, db, make_connection):
    connection = make_connection(
        ChannelProvider.OUTLOOK,
        webhook_subscription_id="sub-3",
        webhook_client_state="state-3",
    )
    notification = {"subscriptionId": "sub-3", "clientState": "state-3"}

    response = await client.post(
        "/webhooks/outlook", json={"value": ["junk", 42, None, notification]}
    )

    assert response.status_code == 202
    assert response.json() == {"status": "accepted", "queued": 1, "ignored": 3}
    assert [job.connection_id for job in _sync_jobs(db)] == [connection.id]


@pytest.mark.asyncio
async def test_outlook_only_non_object_entries_are_ignored(client, db):
    response = await client.post("/webhooks/outlook", json={"value": ["junk"]})

    assert response.status_code == 202
    assert response.json() == {"status": "ignored", "ignored": 1}


@pytest.mark.asyncio
async def test_outlook_missing_value_array(client):
    response = await client.post("/webhooks/outlook", json={"foo": "bar"})

    assert response.status_code == 400


# =============================================================================
# Slack
# =============================================================================


def _slack_headers(body: bytes, secret: str, timestamp: int | None = None) -> dict[str, str]:
    ts = str(timestamp or int(time.time()))
    digest = hmac.new(secret.encode(), b"v0:" + ts.encode() + b":" + body, hashlib.sha256).hexdigest()
    return {
        "x-slack-request-timestamp": ts,
        "x-slack-signature": f"v0={digest}",
        "content-type": "application/json",
    }


@pytest.mark.asyncio
async def test_slack_url_verification(client):
    response = await client.post(
        "/webhooks/slack", json={"type": "url_verification", "challenge": "chal-1"}
    )

    assert response.status_code == 200
    assert response.json() == {"challenge": "chal-1"}


@pytest.mark.asyncio
async def test_slack_message_event_queues_sync(client, db, make_connection, monkeypatch):
    monkeypatch.setattr(settings, "SLACK_SIGNING_SECRET", "slack-secret")
    connection = make_connection(ChannelProvider.SLACK, account_id="T123")
    body = json.dumps(
        {
            "type": "event_callback",
            "team_id": "T123",
            "event": {"type": "message", "channel": "C1", "ts": "1700000000.000100"},
        }
    ).encode()

    response = await client.post(
        "/webhooks/slack", content=body, headers=_slack_headers(body, "slack-secret")
    )

    assert response.status_code == 202
    assert response.json()["queued"] == 1
    assert _sync_jobs(db)[0].connection_id == connection.id


@pytest.mark.asyncio
async def test_slack_bad_signature_rejected(client, db, make_connection, monkeypatch):
    monkeypatch.setattr(settings, "SLACK_SIGNING_SECRET", "slack-secret")
    make_connection(ChannelProvider.SLACK, account_id="T123")
    body = json.dumps({"type": "event_callback", "team_id": "T123", "event": {"type": "message"}}).encode()

    response = await client.post(
        "/webhooks/slack", content=body, headers=_slack_headers(body, "other-secret")
    )

    assert response.status_code == 403
    assert _sync_jobs(db) == []


@pytest.mark.asyncio
async def test_slack_non_message_event_ignored(client, db, make_connection):
    make_connection(ChannelProvider.SLACK, account_id="T123")

    response = await client.post(
        "/webhooks/slack",
        json={"type": "event_callback", "team_id": "T123", "event": {"type": "reaction_added"}},
    )

    assert response.json() == {"status": "ignored", "reason": "unsupported_event"}
    assert _sync_jobs(db) == []


def test_slack_signature_rejects_stale_timestamp():
    body = b'{"type":"event_callback"}'
    now = 1_700_000_000
    headers = _slack_headers(body, "secret", timestamp=now - 600)

    assert not verify_slack_signature(
        body, headers["x-slack-signature"], headers["x-slack-request-timestamp"], "secret", now=now
    )
    fresh = _slack_headers(body, "secret", timestamp=now - 10)
    assert verify_slack_signature(
        body, fresh["x-slack-signature"], fresh["x-slack-request-timestamp"], "secret", now=now
    )


@pytest.mark.asyncio
async def test_unknown_provider_404(client):
    response = await client.post("/webhooks/teams", json={})

    assert response.status_code == 404
