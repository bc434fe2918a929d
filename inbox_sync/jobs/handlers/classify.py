"""Message classification job handlers."""

from __future__ import annotations

import functools
import logging

import anyio

from inbox_sync.jobs.utils import uuid_from_payload
from inbox_sync.services import classifier_service

logger = logging.getLogger(__name__)


async def process_message_classify(db, job) -> None:
    """Classify one newly inserted message. Classifier failures never fail the job."""
    message_id = uuid_from_payload(job.payload, "message_id")
    message = await anyio.to_thread.run_sync(
        functools.partial(classifier_service.classify_and_store, db, message_id)
    )
    if message is None:
        logger.info("Message %s no longer exists; classification skipped", message_id)
