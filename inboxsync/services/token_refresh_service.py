"""Token refresh scheduling - keeps each account's access token valid.

Targeted jobs are enqueued when an account is linked and fire shortly
before the token's lifetime elapses. They do not chain; the periodic bulk
sweep is the safety net for accounts whose individual job was lost.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from inboxsync.core.config import settings
from inboxsync.core.errors import (
    AccountNotFound,
    AccountNotRefreshable,
    LifecycleError,
    ProviderTerminal,
    SchedulingFailure,
)
from inboxsync.core.structured_logging import build_log_context
from inboxsync.db.enums import JobType
from inboxsync.db.models import ConnectedAccount, Job
from inboxsync.services import account_service, gmail_client, job_service
from inboxsync.utils.datetime_parsing import now_utc

logger = logging.getLogger(__name__)

ERROR_MAX_LENGTH = 500


@dataclass(frozen=True)
class RefreshOutcome:
    account_id: UUID
    expires_at: datetime


@dataclass
class SweepResult:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    failures: list[tuple[UUID, str]] = field(default_factory=list)


def next_refresh_at(now: datetime | None = None) -> datetime:
    current = now or now_utc()
    lead = settings.ACCESS_TOKEN_LIFETIME_SECONDS - settings.TOKEN_REFRESH_LEAD_SECONDS
    return current + timedelta(seconds=max(lead, 0))


def schedule(db: Session, account: ConnectedAccount) -> UUID | None:
    """
    Enqueue a targeted refresh for the account.

    Returns the job id, or None when a refresh is already pending/running.
    Raises SchedulingFailure if the queue rejects the enqueue.
    """
    try:
        job = job_service.enqueue_unique_job(
            db,
            JobType.TOKEN_REFRESH,
            idempotency_key=job_service.account_job_key(JobType.TOKEN_REFRESH, account.id),
            account_id=account.id,
            payload={"account_id": str(account.id)},
            run_at=next_refresh_at(),
            max_attempts=settings.JOB_MAX_ATTEMPTS,
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise SchedulingFailure(f"Could not schedule token refresh: {type(exc).__name__}") from exc
    if job is None:
        logger.info("Token refresh already scheduled for account %s", account.id)
        return None
    logger.info(
        "Scheduled token refresh job %s for account %s at %s",
        job.id,
        account.id,
        job.run_at,
        extra=build_log_context(account_id=str(account.id), job_id=str(job.id)),
    )
    return job.id


def schedule_sweep(db: Session, *, now: datetime | None = None) -> UUID | None:
    """Enqueue the bulk sweep for the current window. None if already enqueued."""
    current = now or now_utc()
    try:
        job = job_service.enqueue_unique_job(
            db,
            JobType.TOKEN_REFRESH,
            idempotency_key=job_service.sweep_job_key(
                JobType.TOKEN_REFRESH, current, settings.TOKEN_REFRESH_SWEEP_INTERVAL_SECONDS
            ),
            payload={"sweep": True},
            run_at=current,
            max_attempts=1,
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise SchedulingFailure(f"Could not schedule token refresh sweep: {type(exc).__name__}") from exc
    return job.id if job else None


async def run(db: Session, job: Job) -> RefreshOutcome | SweepResult:
    """Run a refresh job: targeted when it carries an account, else a bulk sweep."""
    if job.account_id is None:
        return await run_sweep(db, job_id=job.id)
    return await refresh_account(db, job.account_id)


async def refresh_account(db: Session, account_id: UUID) -> RefreshOutcome:
    account = account_service.get_account(db, account_id)
    if account is None:
        raise AccountNotFound(f"Connected account {account_id} not found")

    refresh_token = account_service.get_refresh_token(account)
    if not refresh_token:
        raise AccountNotRefreshable(f"Connected account {account_id} has no refresh token")

    try:
        grant = await gmail_client.refresh_access_token(refresh_token)
    except ProviderTerminal as exc:
        account_service.update_account(
            db, account_id, token_last_error=str(exc)[:ERROR_MAX_LENGTH]
        )
        logger.warning(
            "Token refresh rejected for account %s: %s",
            account_id,
            exc,
            extra=build_log_context(account_id=str(account_id)),
        )
        raise

    updated = account_service.store_tokens(
        db,
        account_id,
        access_token=grant.access_token,
        expires_at=grant.expires_at,
        refresh_token=grant.refresh_token,
    )
    if updated is None:
        raise AccountNotFound(f"Connected account {account_id} was removed during refresh")

    logger.info(
        "Refreshed access token for account %s (expires %s)",
        account_id,
        grant.expires_at,
        extra=build_log_context(account_id=str(account_id)),
    )
    return RefreshOutcome(account_id=account_id, expires_at=grant.expires_at)


async def run_sweep(db: Session, *, job_id: UUID | None = None) -> SweepResult:
    """
    Refresh every account whose token expires within the sweep window.

    Each account is refreshed independently; failures are collected and the
    sweep always completes.

    When run from a job, the job is heartbeated after each account so a long
    sweep is not mistaken for a crashed one.
    """
    candidates = account_service.list_accounts_expiring_within(
        db, settings.token_refresh_sweep_window_seconds
    )
    account_ids = [account.id for account in candidates]
    result = SweepResult()

    for account_id in account_ids:
        result.attempted += 1
        try:
            await refresh_account(db, account_id)
            result.succeeded += 1
        except Exception as exc:
            db.rollback()
            result.failed += 1
            result.failures.append((account_id, f"{type(exc).__name__}: {exc}"[:ERROR_MAX_LENGTH]))
            logger.warning(
                "Token refresh failed for account %s during sweep: %s",
                account_id,
                type(exc).__name__,
                extra=build_log_context(account_id=str(account_id)),
            )
        if job_id is not None:
            job_service.heartbeat_job(db, job_id)

    logger.info(
        "Token refresh sweep complete: total=%s successful=%s failed=%s",
        result.attempted,
        result.succeeded,
        result.failed,
    )
    return result


def on_exhausted(db: Session, job: Job, exc: BaseException) -> None:
    """Record the final error once retries for a targeted refresh run out."""
    if job.account_id is None:
        return
    account_service.update_account(
        db, job.account_id, token_last_error=f"{type(exc).__name__}: {exc}"[:ERROR_MAX_LENGTH]
    )


def _needs_refresh(account: ConnectedAccount) -> bool:
    if account.access_token_expires_at is None:
        return True
    return not account_service.has_usable_access_token(
        account, leeway_seconds=settings.TOKEN_REFRESH_LEAD_SECONDS
    )


async def ensure_fresh_token(db: Session, account: ConnectedAccount) -> ConnectedAccount:
    """
    Refresh the access token inline when it is missing, expiring or has no expiry.

    Used before calls that need a live token (watch renewal, history fetch).
    A terminal refresh failure is left for the caller's usability check. A
    transient one is raised only when no usable token remains, so the job
    retries instead of giving up on the mailbox.
    """
    if not _needs_refresh(account):
        return account
    if not account_service.get_refresh_token(account):
        return account

    context = build_log_context(account_id=str(account.id))
    try:
        await refresh_account(db, account.id)
    except LifecycleError as exc:
        db.rollback()
        refreshed = account_service.get_account(db, account.id) or account
        logger.warning(
            "On-demand token refresh failed for account %s: %s",
            account.id,
            type(exc).__name__,
            extra=context,
        )
        if exc.retryable and not account_service.has_usable_access_token(refreshed):
            raise
        return refreshed

    logger.info("Refreshed access token on demand for account %s", account.id, extra=context)
    return account_service.get_account(db, account.id) or account
