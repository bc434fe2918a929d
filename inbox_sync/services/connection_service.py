"""Connection store - lifecycle and lookups for channel connections."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inbox_sync.core.encryption import encrypt_token
from inbox_sync.db.enums import ChannelProvider, ConnectionStatus, JobType
from inbox_sync.db.models import ChannelConnection
from inbox_sync.services import job_service

logger = logging.getLogger(__name__)

# Statuses the orchestrator sweeps. auth_expired/disconnected are excluded
# until an external reset.
SYNCABLE_STATUSES: tuple[ConnectionStatus, ...] = (
    ConnectionStatus.PENDING,
    ConnectionStatus.ACTIVE,
    ConnectionStatus.ERROR,
)

# Statuses whose push subscriptions are kept alive.
RENEWABLE_STATUSES: tuple[ConnectionStatus, ...] = (
    ConnectionStatus.ACTIVE,
    ConnectionStatus.ERROR,
)

ALLOWED_TRANSITIONS: dict[ConnectionStatus, frozenset[ConnectionStatus]] = {
    ConnectionStatus.PENDING: frozenset({ConnectionStatus.ACTIVE}),
    ConnectionStatus.ACTIVE: frozenset(
        {ConnectionStatus.ERROR, ConnectionStatus.AUTH_EXPIRED}
    ),
    ConnectionStatus.ERROR: frozenset(
        {
            ConnectionStatus.ACTIVE,
            ConnectionStatus.AUTH_EXPIRED,
            ConnectionStatus.DISCONNECTED,
        }
    ),
    ConnectionStatus.AUTH_EXPIRED: frozenset({ConnectionStatus.DISCONNECTED}),
    ConnectionStatus.DISCONNECTED: frozenset(),
}


class InvalidTransitionError(ValueError):
    def __init__(self, current: ConnectionStatus, target: ConnectionStatus):
        super().__init__(f"Invalid connection transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# State machine
# =============================================================================


def can_transition(current: ConnectionStatus, target: ConnectionStatus) -> bool:
    return ConnectionStatus(target) in ALLOWED_TRANSITIONS[ConnectionStatus(current)]


def transition_status(connection: ChannelConnection, target: ConnectionStatus) -> None:
    """Apply a state-machine transition or raise InvalidTransitionError.

    Same-state assignments are no-ops. Caller commits.
    """
    current = ConnectionStatus(connection.status)
    target = ConnectionStatus(target)
    if current == target:
        return
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)
    connection.status = target
    if target == ConnectionStatus.DISCONNECTED:
        connection.disconnected_at = _now_utc()
    logger.info(
        "Connection %s status %s -> %s", connection.id, current.value, target.value
    )


def try_transition(connection: ChannelConnection, target: ConnectionStatus) -> bool:
    """Like transition_status, but logs and ignores transitions outside the table."""
    try:
        transition_status(connection, target)
    except InvalidTransitionError as exc:
        logger.warning("Ignoring transition for connection %s: %s", connection.id, exc)
        return False
    return True


# =============================================================================
# Lookups
# =============================================================================


def get_connection(db: Session, connection_id: UUID) -> ChannelConnection | None:
    return db.query(ChannelConnection).filter(ChannelConnection.id == connection_id).first()


def list_syncable_connections(
    db: Session,
    *,
    workspace_id: UUID | None = None,
) -> list[ChannelConnection]:
    query = db.query(ChannelConnection).filter(
        ChannelConnection.status.in_(SYNCABLE_STATUSES)
    )
    if workspace_id:
        query = query.filter(ChannelConnection.workspace_id == workspace_id)
    return query.order_by(ChannelConnection.workspace_id, ChannelConnection.created_at).all()


def list_workspace_connections(db: Session, workspace_id: UUID) -> list[ChannelConnection]:
    """Every connection of a workspace, whatever its status."""
    return (
        db.query(ChannelConnection)
        .filter(ChannelConnection.workspace_id == workspace_id)
        .order_by(ChannelConnection.created_at)
        .all()
    )


def find_syncable_by_account(
    db: Session,
    *,
    provider: ChannelProvider,
    provider_account_id: str,
) -> list[ChannelConnection]:
    """One mailbox may be connected in several workspaces."""
    return (
        db.query(ChannelConnection)
        .filter(
            ChannelConnection.provider == provider,
            ChannelConnection.provider_account_id == provider_account_id,
            ChannelConnection.status.in_(SYNCABLE_STATUSES),
        )
        .all()
    )


def find_by_subscription_id(db: Session, subscription_id: str) -> ChannelConnection | None:
    return (
        db.query(ChannelConnection)
        .filter(ChannelConnection.webhook_subscription_id == subscription_id)
        .first()
    )


# =============================================================================
# External actions (OAuth callback, user disconnect)
# =============================================================================


def _normalize_account_id(provider: ChannelProvider, provider_account_id: str) -> str:
    value = provider_account_id.strip()
    if provider in (ChannelProvider.GMAIL, ChannelProvider.OUTLOOK):
        return value.lower()
    return value


def register_connection(
    db: Session,
    *,
    workspace_id: UUID,
    provider: ChannelProvider,
    provider_account_id: str,
    access_token: str,
    refresh_token: str | None = None,
    token_expires_at: datetime | None = None,
    display_name: str | None = None,
    provider_config: dict | None = None,
) -> ChannelConnection:
    """
    Create or re-authorize a connection after the external OAuth flow.

    Re-authorizing an ``auth_expired`` or ``disconnected`` connection is the
    external reset: the row goes back to ``pending`` with a fresh cursor.
    A webhook registration job is queued so push starts without waiting for
    the next renewal sweep.
    """
    provider = ChannelProvider(provider)
    account_id = _normalize_account_id(provider, provider_account_id)

    connection = (
        db.query(ChannelConnection)
        .filter(
            ChannelConnection.workspace_id == workspace_id,
            ChannelConnection.provider == provider,
            ChannelConnection.provider_account_id == account_id,
        )
        .first()
    )
    if connection is None:
        connection = ChannelConnection(
            workspace_id=workspace_id,
            provider=provider,
            provider_account_id=account_id,
            status=ConnectionStatus.PENDING,
            provider_config={},
        )
        db.add(connection)
    elif connection.status in (ConnectionStatus.AUTH_EXPIRED, ConnectionStatus.DISCONNECTED):
        logger.info("Re-authorizing connection %s (was %s)", connection.id, connection.status.value)
        connection.status = ConnectionStatus.PENDING
        connection.sync_cursor = None
        connection.consecutive_error_count = 0
        connection.last_sync_error = None
        connection.webhook_expires_at = None
        connection.webhook_subscription_id = None
        connection.webhook_client_state = None
        connection.webhook_renewal_failures = 0
        connection.webhook_last_error = None
        connection.disconnected_at = None

    connection.access_token_encrypted = encrypt_token(access_token)
    if refresh_token:
        connection.refresh_token_encrypted = encrypt_token(refresh_token)
    connection.token_expires_at = token_expires_at
    if display_name is not None:
        connection.display_name = display_name
    if provider_config is not None:
        connection.provider_config = provider_config

    db.commit()
    db.refresh(connection)

    try:
        job_service.schedule_job(
            db,
            job_type=JobType.WEBHOOK_REGISTER,
            workspace_id=connection.workspace_id,
            connection_id=connection.id,
            payload={"connection_id": str(connection.id)},
            idempotency_key=f"webhook_register:{connection.id}:{connection.updated_at.isoformat()}",
        )
    except IntegrityError:
        db.rollback()
    return connection


def disconnect_connection(db: Session, connection_id: UUID) -> ChannelConnection:
    """
    Explicit user/operator disconnect.

    Only ``error`` and ``auth_expired`` connections may be disconnected.
    The push subscription is torn down best effort.
    """
    # Local import: the registry pulls in credential_service and the adapters.
    from inbox_sync.services.providers import registry as provider_registry

    connection = get_connection(db, connection_id)
    if connection is None:
        raise LookupError(f"Connection {connection_id} not found")

    transition_status(connection, ConnectionStatus.DISCONNECTED)

    try:
        provider_registry.get_adapter(db, connection).unregister_webhook()
    except Exception as exc:
        logger.warning(
            "Webhook teardown failed for connection %s: %s", connection.id, exc
        )
    connection.webhook_expires_at = None
    connection.webhook_subscription_id = None
    connection.webhook_client_state = None
    db.commit()
    db.refresh(connection)
    return connection
