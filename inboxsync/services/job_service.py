"""Job service - durable job queue for scheduling, claiming and retrying work."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inboxsync.core.config import settings
from inboxsync.db.enums import ACTIVE_JOB_STATUSES, JobStatus, JobType
from inboxsync.db.models import Job
from inboxsync.utils.datetime_parsing import as_utc, now_utc

logger = logging.getLogger(__name__)

LAST_ERROR_MAX_LENGTH = 500
SWEEP_KEY_MARKER = ":sweep:"


def account_job_key(job_type: JobType, account_id: UUID) -> str:
    """Key held by the single active per-account job of a kind."""
    return f"{job_type.value}:{account_id}"


def sweep_job_key(job_type: JobType, when: datetime, interval_seconds: int) -> str:
    """Key for a periodic sweep, bucketed so one sweep runs per interval."""
    bucket = int(as_utc(when).timestamp()) // max(interval_seconds, 1)
    return f"{job_type.value}{SWEEP_KEY_MARKER}{bucket}"


def enqueue_job(
    db: Session,
    job_type: JobType,
    *,
    account_id: UUID | None = None,
    payload: dict | None = None,
    run_at: datetime | None = None,
    max_attempts: int | None = None,
    idempotency_key: str | None = None,
    commit: bool = True,
) -> Job:
    """
    Add a new background job.

    If run_at is None, the job runs immediately.
    If idempotency_key is provided, a second active job with the same key
    fails with IntegrityError (caller should catch and handle).
    With commit=False the job is only flushed, so it lands in the caller's
    transaction.
    """
    job = Job(
        account_id=account_id,
        job_type=job_type.value,
        payload=payload or {},
        run_at=run_at or now_utc(),
        status=JobStatus.PENDING.value,
        attempts=0,
        max_attempts=max_attempts or settings.JOB_MAX_ATTEMPTS,
        idempotency_key=idempotency_key,
    )
    db.add(job)
    if commit:
        db.commit()
        db.refresh(job)
    else:
        db.flush()
    return job


def enqueue_unique_job(
    db: Session,
    job_type: JobType,
    *,
    idempotency_key: str,
    account_id: UUID | None = None,
    payload: dict | None = None,
    run_at: datetime | None = None,
    max_attempts: int | None = None,
) -> Job | None:
    """
    Enqueue a job unless another job already holds the key.

    Returns the new job, or None when the key is taken. Commits on success
    and rolls the session back on a lost race.
    """
    if get_job_by_key(db, idempotency_key):
        return None
    try:
        return enqueue_job(
            db,
            job_type,
            account_id=account_id,
            payload=payload,
            run_at=run_at,
            max_attempts=max_attempts,
            idempotency_key=idempotency_key,
        )
    except IntegrityError:
        db.rollback()
        logger.info("Duplicate %s job suppressed for key=%s", job_type.value, idempotency_key)
        return None


def get_job(db: Session, job_id: UUID) -> Job | None:
    return db.query(Job).filter(Job.id == job_id).first()


def get_job_by_key(db: Session, idempotency_key: str) -> Job | None:
    """Job currently holding the key (active, or a finished sweep bucket)."""
    return db.query(Job).filter(Job.idempotency_key == idempotency_key).first()


def cancel_account_jobs(db: Session, account_id: UUID, job_type: JobType) -> int:
    """Fail pending jobs of a kind for an account and release their keys."""
    jobs = (
        db.query(Job)
        .filter(
            Job.account_id == account_id,
            Job.job_type == job_type.value,
            Job.status == JobStatus.PENDING.value,
        )
        .with_for_update(skip_locked=True)
        .all()
    )
    for job in jobs:
        job.status = JobStatus.FAILED.value
        job.last_error = "Cancelled"
        job.completed_at = now_utc()
        release_job_key(job)
    db.flush()
    return len(jobs)


def has_active_account_job(db: Session, account_id: UUID, job_type: JobType) -> bool:
    return (
        db.query(Job.id)
        .filter(
            Job.account_id == account_id,
            Job.job_type == job_type.value,
            Job.status.in_(ACTIVE_JOB_STATUSES),
        )
        .first()
        is not None
    )


def list_account_jobs(
    db: Session,
    account_id: UUID,
    job_type: JobType | None = None,
    status: JobStatus | None = None,
) -> list[Job]:
    """List jobs for an account with optional filters, oldest first."""
    query = db.query(Job).filter(Job.account_id == account_id)
    if job_type:
        query = query.filter(Job.job_type == job_type.value)
    if status:
        query = query.filter(Job.status == status.value)
    return query.order_by(Job.created_at, Job.run_at).all()


def get_pending_jobs(db: Session, limit: int = 10) -> list[Job]:
    """
    Get pending jobs that are due to run.

    Returns jobs where status='pending' and run_at <= now, ordered by run_at.
    """
    return (
        db.query(Job)
        .filter(
            Job.status == JobStatus.PENDING.value,
            Job.run_at <= now_utc(),
        )
        .order_by(Job.run_at)
        .limit(limit)
        .all()
    )


def claim_pending_jobs(db: Session, limit: int = 10) -> list[UUID]:
    """
    Atomically claim due jobs for this worker.

    Rows are locked with SKIP LOCKED so concurrent workers never claim the
    same job. Claimed jobs move to running with attempts incremented.
    """
    now = now_utc()
    jobs = (
        db.query(Job)
        .filter(
            Job.status == JobStatus.PENDING.value,
            Job.run_at <= now,
        )
        .order_by(Job.run_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .all()
    )
    for job in jobs:
        job.status = JobStatus.RUNNING.value
        job.attempts += 1
        job.started_at = now
    db.commit()
    return [job.id for job in jobs]


def mark_job_running(db: Session, job: Job) -> Job:
    """Mark a job as running (increment attempts)."""
    job.status = JobStatus.RUNNING.value
    job.attempts += 1
    job.started_at = now_utc()
    db.commit()
    db.refresh(job)
    return job


def release_job_key(job: Job) -> None:
    """Free the idempotency key so a successor job can take it."""
    if job.idempotency_key and SWEEP_KEY_MARKER not in job.idempotency_key:
        job.idempotency_key = None


def mark_job_completed(db: Session, job: Job, *, commit: bool = True) -> Job:
    """Mark a job as completed and release its idempotency key."""
    job.status = JobStatus.COMPLETED.value
    job.completed_at = now_utc()
    job.last_error = None
    release_job_key(job)
    if commit:
        db.commit()
        db.refresh(job)
    else:
        db.flush()
    return job


def retry_delay(attempts: int) -> timedelta:
    """Exponential backoff: base * 2**(attempts-1), capped."""
    exponent = max(attempts - 1, 0)
    seconds = settings.JOB_RETRY_BASE_SECONDS * (2 ** exponent)
    return timedelta(seconds=min(seconds, settings.JOB_RETRY_MAX_SECONDS))


def mark_job_failed(db: Session, job: Job, error: str, *, retryable: bool = True) -> Job:
    """
    Mark a job as failed.

    If the error is retryable and attempts < max_attempts, reset to pending
    with backoff. Otherwise the job fails permanently and its key is released.
    """
    job.last_error = (error or "")[:LAST_ERROR_MAX_LENGTH] or None
    if retryable and job.attempts < job.max_attempts:
        job.status = JobStatus.PENDING.value
        job.run_at = now_utc() + retry_delay(job.attempts)
    else:
        job.status = JobStatus.FAILED.value
        job.completed_at = now_utc()
        release_job_key(job)
    db.commit()
    db.refresh(job)
    return job


def is_exhausted(job: Job) -> bool:
    return job.status == JobStatus.FAILED.value


def heartbeat_job(db: Session, job_id: UUID) -> None:
    """Push started_at forward so a long-running job is not requeued as stale."""
    db.query(Job).filter(Job.id == job_id, Job.status == JobStatus.RUNNING.value).update(
        {Job.started_at: now_utc()}, synchronize_session=False
    )
    db.commit()


def requeue_stale_jobs(db: Session, stale_after_seconds: int | None = None) -> int:
    """
    Return jobs stuck in running (crashed worker) to pending.

    Jobs that already used every attempt are failed instead.
    """
    window = stale_after_seconds if stale_after_seconds is not None else settings.JOB_STALE_AFTER_SECONDS
    cutoff = now_utc() - timedelta(seconds=window)
    stale = (
        db.query(Job)
        .filter(
            Job.status == JobStatus.RUNNING.value,
            or_(Job.started_at.is_(None), Job.started_at <= cutoff),
        )
        .with_for_update(skip_locked=True)
        .all()
    )
    for job in stale:
        if job.attempts < job.max_attempts:
            job.status = JobStatus.PENDING.value
            job.run_at = now_utc()
        else:
            job.status = JobStatus.FAILED.value
            job.completed_at = now_utc()
            job.last_error = "Worker lost while job was running"
            release_job_key(job)
    if stale:
        db.commit()
        logger.warning("Requeued %s stale running jobs", len(stale))
    return len(stale)
