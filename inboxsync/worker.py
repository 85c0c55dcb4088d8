"""
Background worker for processing scheduled jobs.

Usage:
    python -m inboxsync.worker

The worker polls for due jobs, claims a batch, and runs them concurrently
(bounded by WORKER_CONCURRENCY), each in its own database session. Every
tick it also requeues jobs orphaned by a crashed worker and enqueues the
periodic sweeps (token refresh, watch reconcile) whose window has come up.
"""

import asyncio
import logging
from uuid import UUID

from inboxsync.core.config import settings
from inboxsync.core.structured_logging import build_log_context
from inboxsync.db.session import SessionLocal
from inboxsync.jobs.registry import resolve_exhausted_hook, resolve_job_handler
from inboxsync.services import job_service, token_refresh_service, watch_renewal_service
from inboxsync.services.http_service import classify_exception

logger = logging.getLogger(__name__)


def _job_context(job) -> dict:
    return build_log_context(
        job_id=str(job.id),
        job_type=job.job_type,
        account_id=str(job.account_id) if job.account_id else None,
    )


async def process_job(db, job) -> None:
    """Process a single job based on its type."""
    logger.info(
        "Processing job %s (type=%s, attempt=%s)",
        job.id,
        job.job_type,
        job.attempts,
        extra=_job_context(job),
    )
    handler = resolve_job_handler(job.job_type)
    await handler(db, job)


def _run_exhausted_hook(db, job, exc: BaseException) -> None:
    hook = resolve_exhausted_hook(job.job_type)
    if hook is None:
        return
    try:
        hook(db, job, exc)
    except Exception:
        db.rollback()
        logger.exception("Exhausted hook failed for job %s", job.id, extra=_job_context(job))


async def run_claimed_job(job_id: UUID) -> None:
    """Run one claimed job and record its outcome."""
    with SessionLocal() as db:
        job = job_service.get_job(db, job_id)
        if job is None:
            logger.warning("Claimed job %s disappeared before it ran", job_id)
            return

        try:
            await process_job(db, job)
        except Exception as exc:
            db.rollback()
            retryable = classify_exception(exc)
            job_service.mark_job_failed(db, job, f"{type(exc).__name__}: {exc}", retryable=retryable)
            if job_service.is_exhausted(job):
                logger.error(
                    "Job %s failed permanently: %s",
                    job.id,
                    type(exc).__name__,
                    extra=_job_context(job),
                )
                if retryable:
                    _run_exhausted_hook(db, job, exc)
            else:
                logger.warning(
                    "Job %s failed (attempt %s/%s), retrying at %s: %s",
                    job.id,
                    job.attempts,
                    job.max_attempts,
                    job.run_at,
                    type(exc).__name__,
                    extra=_job_context(job),
                )
            return

        job_service.mark_job_completed(db, job)
        logger.info("Job %s completed successfully", job.id, extra=_job_context(job))


def enqueue_periodic_sweeps(db) -> None:
    """Enqueue the sweeps for the current window (no-op if already queued)."""
    sweep_id = token_refresh_service.schedule_sweep(db)
    if sweep_id:
        logger.info("Enqueued token refresh sweep job %s", sweep_id)
    reconcile_id = watch_renewal_service.schedule_reconcile(db)
    if reconcile_id:
        logger.info("Enqueued watch reconcile job %s", reconcile_id)


async def poll_once(semaphore: asyncio.Semaphore | None = None) -> int:
    """One worker tick. Returns the number of jobs claimed."""
    with SessionLocal() as db:
        job_service.requeue_stale_jobs(db)
        if settings.WORKER_SCHEDULE_SWEEPS:
            enqueue_periodic_sweeps(db)
        job_ids = job_service.claim_pending_jobs(db, limit=settings.WORKER_BATCH_SIZE)

    if not job_ids:
        return 0
    logger.info("Claimed %s pending jobs", len(job_ids))

    limiter = semaphore or asyncio.Semaphore(settings.WORKER_CONCURRENCY)

    async def _guarded(job_id: UUID) -> None:
        async with limiter:
            await run_claimed_job(job_id)

    await asyncio.gather(*(_guarded(job_id) for job_id in job_ids))
    return len(job_ids)


async def worker_loop() -> None:
    """Main worker loop - polls for and processes pending jobs."""
    logger.info(
        "Worker starting (poll interval: %ss, batch size: %s, concurrency: %s)",
        settings.WORKER_POLL_INTERVAL,
        settings.WORKER_BATCH_SIZE,
        settings.WORKER_CONCURRENCY,
    )
    if not settings.GMAIL_PUSH_TOPIC:
        logger.warning("GMAIL_PUSH_TOPIC not set - watch renewals will fail")

    semaphore = asyncio.Semaphore(settings.WORKER_CONCURRENCY)
    while True:
        try:
            await poll_once(semaphore)
        except Exception:
            logger.exception("Error in worker loop")
        await asyncio.sleep(settings.WORKER_POLL_INTERVAL)


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    asyncio.run(worker_loop())


if __name__ == "__main__":
    main()
