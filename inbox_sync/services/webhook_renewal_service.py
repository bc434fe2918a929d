"""Webhook renewal scheduler - keep provider push subscriptions alive."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy.orm import Session

from inbox_sync.core.config import settings
from inbox_sync.core.structured_logging import build_log_context
from inbox_sync.db.enums import ChannelProvider, ConnectionStatus, SyncErrorKind
from inbox_sync.db.models import ChannelConnection
from inbox_sync.services import connection_service
from inbox_sync.services.providers import registry as provider_registry
from inbox_sync.services.providers.base import WebhookRegistration
from inbox_sync.services.providers.errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass
class RenewalSummary:
    renewed: int = 0
    failed: int = 0
    # Connections moved to error/auth_expired during this sweep.
    disabled: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def threshold_hours_for(provider: ChannelProvider) -> int:
    if provider == ChannelProvider.GMAIL:
        return settings.GMAIL_WEBHOOK_RENEW_HOURS
    if provider == ChannelProvider.OUTLOOK:
        return settings.OUTLOOK_WEBHOOK_RENEW_HOURS
    raise ValueError(f"Provider {provider.value} has no expiring webhook subscription")


def _apply_registration(
    connection: ChannelConnection,
    registration: WebhookRegistration,
    *,
    now: datetime,
) -> None:
    connection.webhook_expires_at = registration.expires_at
    if registration.subscription_id:
        connection.webhook_subscription_id = registration.subscription_id
    if registration.client_state:
        connection.webhook_client_state = registration.client_state
    connection.webhook_renewal_failures = 0
    connection.webhook_last_error = None
    connection.webhook_last_renewed_at = now


def _record_renewal_failure(connection: ChannelConnection, exc: Exception) -> bool:
    """Bump the failure counter; returns True if the connection was disabled."""
    connection.webhook_renewal_failures = (connection.webhook_renewal_failures or 0) + 1
    connection.webhook_last_error = str(exc)[:500]

    if isinstance(exc, ProviderError) and exc.kind == SyncErrorKind.AUTH_EXPIRED:
        return connection_service.try_transition(connection, ConnectionStatus.AUTH_EXPIRED)
    if connection.webhook_renewal_failures > settings.WEBHOOK_RENEWAL_FAILURE_CAP:
        if ConnectionStatus(connection.status) == ConnectionStatus.ACTIVE:
            return connection_service.try_transition(connection, ConnectionStatus.ERROR)
    return False


# =============================================================================
# Sweep
# =============================================================================


def list_expiring_connections(
    db: Session,
    *,
    provider: ChannelProvider,
    threshold: timedelta,
    now: datetime,
) -> list[ChannelConnection]:
    return (
        db.query(ChannelConnection)
        .filter(
            ChannelConnection.provider == provider,
            ChannelConnection.status.in_(connection_service.RENEWABLE_STATUSES),
            ChannelConnection.webhook_expires_at.isnot(None),
            ChannelConnection.webhook_expires_at <= now + threshold,
        )
        .order_by(ChannelConnection.webhook_expires_at)
        .all()
    )


def renew_expiring(
    db: Session,
    *,
    provider: ChannelProvider,
    threshold_hours: int | None = None,
    now: datetime | None = None,
) -> RenewalSummary:
    """
    Renew every active/error subscription of ``provider`` expiring within the
    threshold. Failures are counted and retried on the next tick; only after
    the failure cap is exceeded does the connection flip to ``error``.
    """
    provider = ChannelProvider(provider)
    now = now or _now_utc()
    if threshold_hours is None:
        threshold_hours = threshold_hours_for(provider)
    threshold = timedelta(hours=threshold_hours)

    summary = RenewalSummary()
    for connection in list_expiring_connections(db, provider=provider, threshold=threshold, now=now):
        log_extra = build_log_context(
            workspace_id=connection.workspace_id,
            connection_id=connection.id,
            provider=provider.value,
        )
        try:
            registration = provider_registry.get_adapter(db, connection).renew_webhook()
        except Exception as exc:
            db.rollback()
            summary.failed += 1
            if _record_renewal_failure(connection, exc):
                summary.disabled += 1
            db.commit()
            logger.warning(
                "Webhook renewal failed for connection %s (%s consecutive): %s",
                connection.id,
                connection.webhook_renewal_failures,
                exc,
                extra=log_extra,
            )
            continue

        _apply_registration(connection, registration, now=now)
        db.commit()
        summary.renewed += 1
        logger.info(
            "Renewed webhook for connection %s until %s",
            connection.id,
            registration.expires_at,
            extra=log_extra,
        )

    logger.info(
        "Webhook renewal sweep (%s): renewed=%s failed=%s disabled=%s",
        provider.value,
        summary.renewed,
        summary.failed,
        summary.disabled,
    )
    return summary


def renew_all_expiring(db: Session, *, now: datetime | None = None) -> dict[str, RenewalSummary]:
    """One sweep per provider family with that family's threshold."""
    return {
        provider.value: renew_expiring(db, provider=provider, now=now)
        for provider in provider_registry.EXPIRING_WEBHOOK_PROVIDERS
    }


def register_connection_webhook(db: Session, connection_id: UUID) -> ChannelConnection | None:
    """Initial push registration for a freshly (re)connected channel.

    Raises ProviderError so the job worker can retry.
    """
    connection = connection_service.get_connection(db, connection_id)
    if connection is None:
        return None
    if ConnectionStatus(connection.status) not in connection_service.SYNCABLE_STATUSES:
        return connection

    registration = provider_registry.get_adapter(db, connection).register_webhook()
    _apply_registration(connection, registration, now=_now_utc())
    db.commit()
    db.refresh(connection)
    return connection
