"""Provider adapter registry."""

from __future__ import annotations

from typing import Callable

from sqlalchemy.orm import Session

from inbox_sync.db.enums import ChannelProvider
from inbox_sync.db.models import ChannelConnection
from inbox_sync.services import credential_service
from inbox_sync.services.providers.base import ProviderAdapter
from inbox_sync.services.providers.gmail import GmailAdapter
from inbox_sync.services.providers.outlook import OutlookAdapter
from inbox_sync.services.providers.slack import SlackAdapter

AdapterFactory = Callable[[Session, ChannelConnection], ProviderAdapter]


def _token_source(db: Session, connection: ChannelConnection):
    return lambda: credential_service.get_access_token(db, connection)


_FACTORIES: dict[ChannelProvider, AdapterFactory] = {
    ChannelProvider.GMAIL: lambda db, conn: GmailAdapter(conn, _token_source(db, conn)),
    ChannelProvider.OUTLOOK: lambda db, conn: OutlookAdapter(conn, _token_source(db, conn)),
    ChannelProvider.SLACK: lambda db, conn: SlackAdapter(conn, _token_source(db, conn)),
}

# Providers whose push subscriptions expire and need the renewal sweep.
EXPIRING_WEBHOOK_PROVIDERS: tuple[ChannelProvider, ...] = (
    ChannelProvider.GMAIL,
    ChannelProvider.OUTLOOK,
)


def get_adapter(db: Session, connection: ChannelConnection) -> ProviderAdapter:
    factory = _FACTORIES.get(ChannelProvider(connection.provider))
    if not factory:
        raise KeyError(f"Unknown provider: {connection.provider}")
    return factory(db, connection)
