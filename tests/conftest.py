"""
Test configuration and fixtures.

Provides:
- File-backed SQLite database (shared by worker threads), wiped after each test
- HTTPX AsyncClient against the ASGI app
- Connection factory and a scripted fake provider adapter
"""
import os
import tempfile
import uuid
from datetime import datetime, timezone
from typing import AsyncGenerator, Generator

import pytest
from cryptography.fernet import Fernet
from httpx import AsyncClient, ASGITransport
from sqlalchemy.orm import Session

_DB_DIR = tempfile.mkdtemp(prefix="inbox-sync-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["TESTING"] = "1"
os.environ["INTERNAL_SECRET"] = "test-internal-secret"
os.environ["FERNET_KEY"] = Fernet.generate_key().decode()
os.environ["GMAIL_PUSH_TOPIC"] = "projects/test/topics/gmail-push"
os.environ["CLASSIFIER_URL"] = ""
os.environ["SLACK_SIGNING_SECRET"] = ""
os.environ["GMAIL_PUSH_VERIFICATION_TOKEN"] = ""

from inbox_sync.main import app
from inbox_sync.core.deps import get_db
from inbox_sync.core.encryption import encrypt_token
from inbox_sync.db.base import Base
from inbox_sync.db.enums import ChannelProvider, ConnectionStatus
from inbox_sync.db.models import ChannelConnection
from inbox_sync.db.session import SessionLocal, engine
from inbox_sync.services.providers import registry as provider_registry
from inbox_sync.services.providers.base import FetchResult, RawMessage, WebhookRegistration


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def _schema() -> Generator[None, None, None]:
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Session on the shared test database.

    Sync code under test opens its own sessions from worker threads, so a
    savepoint-per-test cannot isolate it; every table is emptied afterwards.
    """
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def session_factory(db: Session):
    return SessionLocal


# =============================================================================
# Domain Fixtures
# =============================================================================

@pytest.fixture
def workspace_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def make_connection(db: Session, workspace_id: uuid.UUID):
    """Insert a connection directly (bypassing the OAuth registration path)."""

    def _make(
        provider: ChannelProvider = ChannelProvider.GMAIL,
        *,
        status: ConnectionStatus = ConnectionStatus.ACTIVE,
        account_id: str | None = None,
        workspace: uuid.UUID | None = None,
        **fields,
    ) -> ChannelConnection:
        connection = ChannelConnection(
            workspace_id=workspace or workspace_id,
            provider=provider,
            provider_account_id=account_id or f"user-{uuid.uuid4().hex[:8]}@example.com",
            status=status,
            access_token_encrypted=encrypt_token("access-token"),
            refresh_token_encrypted=encrypt_token("refresh-token"),
            provider_config={},
            **fields,
        )
        db.add(connection)
        db.commit()
        db.refresh(connection)
        return connection

    return _make


def make_raw_message(provider_message_id: str, **fields) -> RawMessage:
    fields.setdefault("timestamp", datetime(2026, 1, 5, 9, 30, tzinfo=timezone.utc))
    fields.setdefault("subject", f"Subject {provider_message_id}")
    fields.setdefault("sender_email", "sender@example.com")
    return RawMessage(provider_message_id=provider_message_id, **fields)


@pytest.fixture
def raw_message():
    return make_raw_message


class FakeAdapter:
    """Scripted provider adapter.

    ``results`` entries are consumed per fetch: a FetchResult is returned,
    an exception is raised. When the script runs out, fetches return no
    messages and keep the cursor.
    """

    def __init__(self):
        self.results: list = []
        self.registrations: list = []
        self.fetch_calls: list[tuple[str | None, int]] = []
        self.register_calls = 0
        self.renew_calls = 0
        self.unregister_calls = 0
        self.on_fetch = None

    def fetch_changes(self, cursor, limit):
        self.fetch_calls.append((cursor, limit))
        if self.on_fetch is not None:
            self.on_fetch(cursor, limit)
        if not self.results:
            return FetchResult(messages=[], next_cursor=cursor or "cursor-0")
        outcome = self.results.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def _next_registration(self):
        if not self.registrations:
            return WebhookRegistration(expires_at=None)
        outcome = self.registrations.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def register_webhook(self):
        self.register_calls += 1
        return self._next_registration()

    def renew_webhook(self):
        self.renew_calls += 1
        return self._next_registration()

    def unregister_webhook(self):
        self.unregister_calls += 1


@pytest.fixture
def fake_adapter(monkeypatch) -> FakeAdapter:
    """One FakeAdapter served for every connection of every provider."""
    adapter = FakeAdapter()
    for provider in ChannelProvider:
        monkeypatch.setitem(provider_registry._FACTORIES, provider, lambda db, conn: adapter)
    return adapter


@pytest.fixture
def adapter_for(monkeypatch):
    """Per-connection FakeAdapters: ``adapter_for(connection)`` returns (and pins) its fake."""
    by_connection: dict = {}

    def _get(connection_id):
        return by_connection.setdefault(connection_id, FakeAdapter())

    for provider in ChannelProvider:
        monkeypatch.setitem(
            provider_registry._FACTORIES, provider, lambda db, conn: _get(conn.id)
        )
    return lambda connection: _get(connection.id)


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def internal_headers() -> dict[str, str]:
    return {"X-Internal-Secret": "test-internal-secret"}
