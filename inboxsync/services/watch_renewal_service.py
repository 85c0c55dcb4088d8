"""Watch renewal - keeps each mailbox's Gmail push subscription alive.

Each account carries an explicit watch state:

    unwatched -> scheduled -> running -> scheduled   (renewed)
                                      -> broken      (terminal error / retries exhausted)

A successful renewal stores the new expiry, completes the running job and
enqueues the next renewal in a single transaction. If the process dies
between Google's answer and that commit, the reconcile sweep finds the
account with no active watch job and schedules one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from inboxsync.core.config import settings
from inboxsync.core.errors import (
    AccountNotFound,
    LifecycleError,
    NoAccessToken,
    SchedulingFailure,
    WatchNotConfigured,
)
from inboxsync.core.structured_logging import build_log_context
from inboxsync.db.enums import JobType, WatchState
from inboxsync.db.models import ConnectedAccount, Job
from inboxsync.services import account_service, gmail_client, job_service, token_refresh_service
from inboxsync.services.gmail_client import WatchGrant
from inboxsync.utils.datetime_parsing import as_utc, now_utc

logger = logging.getLogger(__name__)

ERROR_MAX_LENGTH = 500


@dataclass(frozen=True)
class WatchOutcome:
    account_id: UUID
    expires_at: datetime | None
    history_id: str | None
    next_job_id: UUID | None


@dataclass
class ReconcileResult:
    examined: int = 0
    scheduled: int = 0
    already_scheduled: int = 0
    failed: int = 0
    broken: int = 0


def _configured_push_topic() -> str:
    topic = (settings.GMAIL_PUSH_TOPIC or "").strip()
    if not topic:
        raise WatchNotConfigured("GMAIL_PUSH_TOPIC not configured")
    return topic


def _watch_key(account_id: UUID) -> str:
    return job_service.account_job_key(JobType.WATCH_RENEW, account_id)


def next_renewal_at(now: datetime | None = None) -> datetime:
    return (now or now_utc()) + timedelta(seconds=settings.WATCH_RENEWAL_INTERVAL_SECONDS)


def schedule(
    db: Session,
    account: ConnectedAccount,
    *,
    run_at: datetime | None = None,
) -> UUID | None:
    """
    Enqueue a renewal for the account and mark its watch scheduled.

    Returns the job id, or None when a renewal is already pending/running.
    """
    try:
        job = job_service.enqueue_unique_job(
            db,
            JobType.WATCH_RENEW,
            idempotency_key=_watch_key(account.id),
            account_id=account.id,
            payload={"account_id": str(account.id)},
            run_at=run_at or next_renewal_at(),
            max_attempts=settings.JOB_MAX_ATTEMPTS,
        )
        if job is None:
            logger.info("Watch renewal already scheduled for account %s", account.id)
            return None
        account_service.update_account(db, account.id, watch_state=WatchState.SCHEDULED.value)
    except SQLAlchemyError as exc:
        db.rollback()
        raise SchedulingFailure(f"Could not schedule watch renewal: {type(exc).__name__}") from exc
    logger.info(
        "Scheduled watch renewal job %s for account %s at %s",
        job.id,
        account.id,
        job.run_at,
        extra=build_log_context(account_id=str(account.id), job_id=str(job.id)),
    )
    return job.id


async def run(db: Session, job: Job) -> WatchOutcome:
    """Run a renewal job for its account."""
    if job.account_id is None:
        raise AccountNotFound("Watch renewal job has no account")
    return await _renew(db, job.account_id, job=job)


async def start_watch(db: Session, account: ConnectedAccount) -> WatchOutcome:
    """Establish the watch now and start the renewal chain."""
    return await _renew(db, account.id, job=None)


async def _renew(db: Session, account_id: UUID, *, job: Job | None) -> WatchOutcome:
    account = account_service.get_account(db, account_id)
    if account is None:
        raise AccountNotFound(f"Connected account {account_id} not found")

    try:
        account = await token_refresh_service.ensure_fresh_token(db, account)
    except LifecycleError as exc:
        _record_failure(db, account_id, exc)
        raise

    if not account_service.has_usable_access_token(account):
        error = NoAccessToken(f"Connected account {account_id} has no usable access token")
        _record_failure(db, account_id, error)
        raise error

    topic = _configured_push_topic()
    access_token = account_service.get_access_token(account)
    account_service.update_account(db, account_id, watch_state=WatchState.RUNNING.value)

    try:
        grant = await gmail_client.start_watch(
            access_token,
            topic_name=topic,
            label_ids=settings.gmail_push_label_ids,
        )
    except LifecycleError as exc:
        _record_failure(db, account_id, exc)
        raise

    return _record_renewal(db, account_id, grant, job=job)


def _record_renewal(
    db: Session,
    account_id: UUID,
    grant: WatchGrant,
    *,
    job: Job | None,
) -> WatchOutcome:
    """Persist the renewal and the next scheduled job in one transaction."""
    now = now_utc()
    account = account_service.lock_account(db, account_id)
    if account is None:
        raise AccountNotFound(f"Connected account {account_id} was removed during watch renewal")

    account.watch_expires_at = grant.expires_at
    account.watch_last_renewed_at = now
    account.watch_last_error = None
    account.watch_state = WatchState.SCHEDULED.value
    if not account.last_history_id and grant.history_id:
        account.last_history_id = grant.history_id

    if job is not None:
        job_service.mark_job_completed(db, job, commit=False)

    next_job_id = None
    key = _watch_key(account_id)
    existing = job_service.get_job_by_key(db, key)
    if existing is None:
        next_job = job_service.enqueue_job(
            db,
            JobType.WATCH_RENEW,
            account_id=account_id,
            payload={"account_id": str(account_id)},
            run_at=next_renewal_at(now),
            max_attempts=settings.JOB_MAX_ATTEMPTS,
            idempotency_key=key,
            commit=False,
        )
        next_job_id = next_job.id
    else:
        next_job_id = existing.id

    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise SchedulingFailure("Next watch renewal could not be enqueued") from exc

    logger.info(
        "Renewed Gmail watch for account %s (expires %s, next job %s)",
        account_id,
        grant.expires_at,
        next_job_id,
        extra=build_log_context(account_id=str(account_id)),
    )
    return WatchOutcome(
        account_id=account_id,
        expires_at=grant.expires_at,
        history_id=grant.history_id,
        next_job_id=next_job_id,
    )


def _record_failure(db: Session, account_id: UUID, exc: LifecycleError) -> None:
    fields: dict[str, object] = {"watch_last_error": str(exc)[:ERROR_MAX_LENGTH]}
    if not exc.retryable:
        fields["watch_state"] = WatchState.BROKEN.value
    account_service.update_account(db, account_id, **fields)
    logger.warning(
        "Gmail watch renewal failed for account %s: %s",
        account_id,
        exc,
        extra=build_log_context(account_id=str(account_id)),
    )


def on_exhausted(db: Session, job: Job, exc: BaseException) -> None:
    """Retries ran out: the chain is broken until the account is re-linked."""
    if job.account_id is None:
        return
    account = account_service.update_account(
        db,
        job.account_id,
        watch_state=WatchState.BROKEN.value,
        watch_last_error=f"{type(exc).__name__}: {exc}"[:ERROR_MAX_LENGTH],
    )
    if account is not None:
        logger.error(
            "Gmail watch chain broken for account %s after %s attempts",
            job.account_id,
            job.attempts,
            extra=build_log_context(account_id=str(job.account_id), job_id=str(job.id)),
        )


async def stop_watch(db: Session, account: ConnectedAccount) -> None:
    """Stop push notifications for the mailbox and cancel pending renewals."""
    access_token = None
    if account_service.has_usable_access_token(account):
        access_token = account_service.get_access_token(account)
    if access_token:
        await gmail_client.stop_watch(access_token)
    else:
        logger.info("Skipping users.stop for account %s without a usable token", account.id)

    job_service.cancel_account_jobs(db, account.id, JobType.WATCH_RENEW)
    account_service.update_account(
        db,
        account.id,
        watch_state=WatchState.UNWATCHED.value,
        watch_expires_at=None,
    )


def schedule_reconcile(db: Session, *, now: datetime | None = None) -> UUID | None:
    """Enqueue the reconcile sweep for the current window. None if already enqueued."""
    current = now or now_utc()
    try:
        job = job_service.enqueue_unique_job(
            db,
            JobType.WATCH_RECONCILE,
            idempotency_key=job_service.sweep_job_key(
                JobType.WATCH_RECONCILE, current, settings.WATCH_RECONCILE_INTERVAL_SECONDS
            ),
            run_at=current,
            max_attempts=1,
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise SchedulingFailure(f"Could not schedule watch reconcile: {type(exc).__name__}") from exc
    return job.id if job else None


def reconcile(db: Session) -> ReconcileResult:
    """
    Re-attach accounts whose renewal chain was lost.

    Accounts that should be watched but hold no active renewal job get one,
    due now when the watch is missing or close to expiry. Broken accounts
    are counted and left alone.
    """
    now = now_utc()
    margin = timedelta(seconds=settings.WATCH_RECONCILE_MARGIN_SECONDS)
    result = ReconcileResult()

    broken = account_service.list_accounts_by_watch_state(db, [WatchState.BROKEN.value])
    result.broken = len(broken)
    for account in broken:
        logger.warning(
            "Gmail watch broken for account %s: %s",
            account.id,
            account.watch_last_error or "unknown error",
            extra=build_log_context(account_id=str(account.id)),
        )

    candidates = account_service.list_accounts_by_watch_state(
        db, [WatchState.SCHEDULED.value, WatchState.RUNNING.value]
    )
    for account in candidates:
        result.examined += 1
        if job_service.get_job_by_key(db, _watch_key(account.id)) is not None:
            result.already_scheduled += 1
            continue

        expires_at = as_utc(account.watch_expires_at)
        if expires_at is None or expires_at <= now + margin:
            run_at = now
        else:
            run_at = min(next_renewal_at(now), expires_at - margin)

        try:
            job_id = schedule(db, account, run_at=run_at)
        except SchedulingFailure as exc:
            result.failed += 1
            logger.warning("Watch reconcile could not schedule account %s: %s", account.id, exc)
            continue
        if job_id is None:
            result.already_scheduled += 1
        else:
            result.scheduled += 1

    logger.info(
        "Watch reconcile complete: examined=%s scheduled=%s already_scheduled=%s failed=%s broken=%s",
        result.examined,
        result.scheduled,
        result.already_scheduled,
        result.failed,
        result.broken,
    )
    return result
