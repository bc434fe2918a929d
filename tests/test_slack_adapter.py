import json
import uuid
from types import SimpleNamespace

import httpx
import pytest

from inbox_sync.services.providers.errors import (
    AuthExpiredError,
    PermanentError,
    RateLimitedError,
    TransientError,
)
from inbox_sync.services.providers.slack import SlackAdapter, parse_slack_message


class SlackStub:
    def __init__(self):
        self.history: dict[str, list[dict]] = {}
        self.channels: list[dict] = []
        self.calls: list[tuple[str, dict]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        params = dict(request.url.params)
        self.calls.append((method, params))
        if method == "conversations.list":
            return httpx.Response(200, json={"ok": True, "channels": self.channels})
        if method == "conversations.history":
            pages = self.history.get(params["channel"]) or [{"messages": []}]
            page = pages.pop(0)
            return httpx.Response(200, json={"ok": True, **page})
        return httpx.Response(200, json={"ok": False, "error": "unknown_method"})

    def history_calls(self) -> list[dict]:
        return [params for method, params in self.calls if method == "conversations.history"]


@pytest.fixture
def stub():
    return SlackStub()


def _adapter(handler, channel_ids=None) -> SlackAdapter:
    config = {"channel_ids": channel_ids} if channel_ids is not None else {}
    connection = SimpleNamespace(id=uuid.uuid4(), provider_config=config)
    return SlackAdapter(connection, lambda: "xoxb-token", transport=httpx.MockTransport(handler))


def test_parse_slack_message_scopes_id_to_channel():
    raw = parse_slack_message("C1", {"ts": "1767605400.000200", "user": "U1", "text": "hi there"})

    assert raw.provider_message_id == "C1:1767605400.000200"
    assert raw.sender_name == "U1"
    assert raw.body == "hi there"
    assert raw.labels == ["C1"]


def test_first_sync_reads_configured_channels(stub):
    stub.history = {
        "C1": [{"messages": [{"ts": "1767605402.000100", "text": "b"}, {"ts": "1767605401.000100", "text": "a"}]}],
        "C2": [{"messages": [{"ts": "1767605500.000100", "text": "c"}]}],
    }

    result = _adapter(stub, channel_ids=["C2", "C1"]).fetch_changes(None, 50)

    assert [m.provider_message_id for m in result.messages] == [
        "C1:1767605402.000100",
        "C1:1767605401.000100",
        "C2:1767605500.000100",
    ]
    assert result.has_more is False
    state = json.loads(result.next_cursor)
    assert state["C1"] == {"oldest": "1767605402.000100", "high": "1767605402.000100"}
    assert state["C2"]["oldest"] == "1767605500.000100"
    assert not any(method == "conversations.list" for method, _ in stub.calls)


def test_backlog_is_drained_newest_first(stub):
    stub.history = {
        "C1": [
            {
                "messages": [{"ts": "300.000000", "text": "3"}, {"ts": "200.000000", "text": "2"}],
                "has_more": True,
            },
            {"messages": [{"ts": "100.000000", "text": "1"}]},
        ]
    }
    adapter = _adapter(stub, channel_ids=["C1"])
    cursor = json.dumps({"C1": {"oldest": "50.000000"}})

    first = adapter.fetch_changes(cursor, 2)

    assert first.has_more is True
    window = json.loads(first.next_cursor)["C1"]
    assert window == {"oldest": "50.000000", "latest": "200.000000", "high": "300.000000"}

    second = adapter.fetch_changes(first.next_cursor, 2)

    assert [m.provider_message_id for m in second.messages] == ["C1:100.000000"]
    assert second.has_more is False
    assert json.loads(second.next_cursor)["C1"] == {"oldest": "300.000000", "high": "300.000000"}
    assert stub.history_calls()[1]["latest"] == "200.000000"
    assert stub.history_calls()[1]["oldest"] == "50.000000"


def test_limit_spent_before_later_channels(stub):
    stub.history = {"C1": [{"messages": [{"ts": "100.000000", "text": "1"}]}]}

    result = _adapter(stub, channel_ids=["C1", "C2"]).fetch_changes(None, 1)

    assert result.has_more is True
    assert "C2" not in json.loads(result.next_cursor)
    assert [params["channel"] for params in stub.history_calls()] == ["C1"]


def test_membership_discovery_when_unconfigured(stub):
    stub.channels = [
        {"id": "C9", "is_member": True},
        {"id": "C8", "is_member": False},
        {"id": "C7", "is_member": True},
    ]

    _adapter(stub).fetch_changes(None, 10)

    assert [params["channel"] for params in stub.history_calls()] == ["C7", "C9"]


def test_housekeeping_subtypes_are_not_ingested(stub):
    stub.history = {
        "C1": [
            {
                "messages": [
                    {"ts": "200.000000", "subtype": "channel_join", "user": "U2"},
                    {"ts": "100.000000", "text": "real"},
                ]
            }
        ]
    }

    result = _adapter(stub, channel_ids=["C1"]).fetch_changes(None, 10)

    assert [m.provider_message_id for m in result.messages] == ["C1:100.000000"]
    assert json.loads(result.next_cursor)["C1"]["oldest"] == "200.000000"


def test_malformed_cursor_restarts_from_bootstrap_window(stub):
    result = _adapter(stub, channel_ids=["C1"]).fetch_changes("not-json", 10)

    assert result.messages == []
    assert "C1" in json.loads(result.next_cursor)


@pytest.mark.parametrize(
    "error,expected",
    [
        ("invalid_auth", AuthExpiredError),
        ("token_revoked", AuthExpiredError),
        ("ratelimited", RateLimitedError),
        ("internal_error", TransientError),
        ("channel_not_found", PermanentError),
    ],
)
def test_api_errors_map_to_taxonomy(error, expected):
    def handler(request):
        return httpx.Response(200, json={"ok": False, "error": error})

    with pytest.raises(expected):
        _adapter(handler, channel_ids=["C1"]).fetch_changes(None, 10)


def test_http_429_is_rate_limited_with_retry_after():
    def handler(request):
        return httpx.Response(429, headers={"Retry-After": "30"}, json={"ok": False})

    with pytest.raises(RateLimitedError) as exc_info:
        _adapter(handler, channel_ids=["C1"]).fetch_changes(None, 10)

    assert exc_info.value.retry_after == 30


def test_push_subscription_is_app_level(stub):
    adapter = _adapter(stub)

    assert adapter.register_webhook().expires_at is None
    assert adapter.renew_webhook().expires_at is None
    adapter.unregister_webhook()
    assert stub.calls == []
