"""
Background worker for processing queued jobs.

Usage:
    python -m inbox_sync.worker
    inbox-sync worker

The worker polls for pending jobs (push-triggered syncs, classification,
webhook registration) and processes them. Run it as a separate process
next to the API.
"""

import asyncio
import logging

from inbox_sync.core.config import settings
from inbox_sync.core.structured_logging import build_log_context
from inbox_sync.db.session import SessionLocal
from inbox_sync.jobs.registry import resolve_job_handler
from inbox_sync.services import job_service

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


async def process_job(db, job) -> None:
    """Process a single job based on its type."""
    logger.info(
        "Processing job %s (type=%s, attempt=%s)", job.id, job.job_type, job.attempts
    )
    handler = resolve_job_handler(job.job_type)
    await handler(db, job)


async def run_pending_jobs(session_factory=SessionLocal, *, limit: int | None = None) -> int:
    """Claim and run one batch of due jobs. Returns the number of jobs attempted."""
    processed = 0
    with session_factory() as db:
        jobs = job_service.get_pending_jobs(db, limit=limit or settings.WORKER_BATCH_SIZE)
        if jobs:
            logger.info("Found %s pending jobs", len(jobs))

        for job in jobs:
            if not job_service.claim_job(db, job):
                # Another worker got there first.
                continue
            processed += 1
            log_extra = build_log_context(
                workspace_id=job.workspace_id,
                connection_id=job.connection_id,
                job_id=job.id,
            )
            try:
                await process_job(db, job)
                job_service.mark_job_completed(db, job)
                logger.info("Job %s completed successfully", job.id, extra=log_extra)
            except Exception as e:
                db.rollback()
                job_service.mark_job_failed(db, job, str(e))
                logger.error(
                    "Job %s failed: %s", job.id, type(e).__name__, extra=log_extra
                )
    return processed


async def worker_loop() -> None:
    """Main worker loop - polls for and processes pending jobs."""
    logger.info(
        "Worker starting (poll interval: %ss, batch size: %s)",
        settings.WORKER_POLL_INTERVAL_SECONDS,
        settings.WORKER_BATCH_SIZE,
    )
    if not settings.classifier_enabled:
        logger.warning("CLASSIFIER_URL not set - new messages stay unclassified")

    while True:
        try:
            await run_pending_jobs()
        except Exception:
            logger.exception("Error in worker loop")

        await asyncio.sleep(settings.WORKER_POLL_INTERVAL_SECONDS)


def main() -> None:
    """Entry point for the worker."""
    configure_logging()
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")


if __name__ == "__main__":
    main()
