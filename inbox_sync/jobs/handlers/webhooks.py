"""Push subscription job handlers."""

from __future__ import annotations

import functools
import logging

import anyio

from inbox_sync.db.enums import ConnectionStatus, SyncErrorKind
from inbox_sync.jobs.utils import uuid_from_payload
from inbox_sync.services import connection_service, webhook_renewal_service
from inbox_sync.services.providers.errors import ProviderError

logger = logging.getLogger(__name__)


async def process_webhook_register(db, job) -> None:
    """
    Register the initial push subscription for a (re)connected channel.

    Retryable provider errors propagate so the worker retries the job.
    Non-retryable ones are stored on the connection; the renewal sweep and
    cron sync keep the connection usable without push.
    """
    connection_id = uuid_from_payload(job.payload, "connection_id")
    try:
        connection = await anyio.to_thread.run_sync(
            functools.partial(
                webhook_renewal_service.register_connection_webhook, db, connection_id
            )
        )
    except ProviderError as exc:
        db.rollback()
        if exc.retryable:
            raise
        connection = connection_service.get_connection(db, connection_id)
        if connection is not None:
            connection.webhook_last_error = str(exc)[:500]
            if exc.kind == SyncErrorKind.AUTH_EXPIRED:
                connection_service.try_transition(connection, ConnectionStatus.AUTH_EXPIRED)
            db.commit()
        logger.warning(
            "Webhook registration for connection %s failed permanently: %s",
            connection_id,
            exc.kind.value,
        )
        return

    if connection is None:
        logger.info("Connection %s not found; webhook registration skipped", connection_id)
        return
    logger.info(
        "Registered webhook for connection %s (expires %s)",
        connection.id,
        connection.webhook_expires_at,
    )
