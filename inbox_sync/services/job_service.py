"""Job service - background job scheduling and lifecycle."""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from inbox_sync.db.enums import JobStatus, JobType
from inbox_sync.db.models import Job

ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def schedule_job(
    db: Session,
    *,
    job_type: JobType,
    payload: dict,
    workspace_id: UUID | None = None,
    connection_id: UUID | None = None,
    run_at: datetime | None = None,
    idempotency_key: str | None = None,
    max_attempts: int = 3,
) -> Job:
    """
    Schedule a new background job.

    If run_at is None, the job runs immediately.
    If idempotency_key is provided, duplicate jobs with same key will fail
    with IntegrityError (caller should catch and handle).
    """
    job = Job(
        workspace_id=workspace_id,
        connection_id=connection_id,
        job_type=job_type.value,
        payload=payload,
        run_at=run_at or _now_utc(),
        status=JobStatus.PENDING.value,
        max_attempts=max_attempts,
        idempotency_key=idempotency_key,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


def has_active_job(
    db: Session,
    *,
    connection_id: UUID,
    job_type: JobType,
    statuses: tuple[str, ...] = ACTIVE_JOB_STATUSES,
) -> bool:
    return (
        db.query(Job.id)
        .filter(
            Job.connection_id == connection_id,
            Job.job_type == job_type.value,
            Job.status.in_(statuses),
        )
        .first()
        is not None
    )


def get_pending_jobs(db: Session, limit: int = 10) -> list[Job]:
    """
    Get pending jobs that are due to run.

    Returns jobs where status='pending' and run_at <= now, ordered by run_at.
    """
    now = _now_utc()
    return (
        db.query(Job)
        .filter(
            Job.status == JobStatus.PENDING.value,
            Job.run_at <= now,
        )
        .order_by(Job.run_at)
        .limit(limit)
        .all()
    )


def claim_job(db: Session, job: Job) -> bool:
    """
    Mark a job as running (increment attempts).

    Conditional on the job still being pending, so two workers polling the
    same batch cannot both run it.
    """
    result = db.execute(
        update(Job)
        .where(Job.id == job.id, Job.status == JobStatus.PENDING.value)
        .values(status=JobStatus.RUNNING.value, attempts=Job.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        return False
    db.refresh(job)
    return True


def mark_job_completed(db: Session, job: Job) -> Job:
    """Mark a job as completed."""
    job.status = JobStatus.COMPLETED.value
    job.completed_at = _now_utc()
    job.last_error = None
    db.commit()
    db.refresh(job)
    return job


def mark_job_failed(db: Session, job: Job, error: str) -> Job:
    """
    Mark a job as failed.

    If attempts < max_attempts, reset to pending for retry.
    """
    job.last_error = error[:500]
    if job.attempts < job.max_attempts:
        job.status = JobStatus.PENDING.value
    else:
        job.status = JobStatus.FAILED.value
    db.commit()
    db.refresh(job)
    return job
