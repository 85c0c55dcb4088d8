"""Job handler registry."""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from inboxsync.db.enums import JobType
from inboxsync.jobs.handlers import gmail
from inboxsync.services import token_refresh_service, watch_renewal_service

JobHandler = Callable[[object, object], Awaitable[None]]
ExhaustedHook = Callable[[object, object, BaseException], None]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobType.TOKEN_REFRESH.value: gmail.process_token_refresh,
    JobType.WATCH_RENEW.value: gmail.process_watch_renew,
    JobType.WATCH_RECONCILE.value: gmail.process_watch_reconcile,
    JobType.HISTORY_FETCH.value: gmail.process_history_fetch,
}

# Called once a job has used up its attempts on retryable errors.
EXHAUSTED_HOOKS: Mapping[str, ExhaustedHook] = {
    JobType.TOKEN_REFRESH.value: token_refresh_service.on_exhausted,
    JobType.WATCH_RENEW.value: watch_renewal_service.on_exhausted,
}


def resolve_job_handler(job_type: str) -> JobHandler:
    handler = JOB_HANDLERS.get(job_type)
    if not handler:
        raise ValueError(f"Unknown job type: {job_type}")
    return handler


def resolve_exhausted_hook(job_type: str) -> ExhaustedHook | None:
    return EXHAUSTED_HOOKS.get(job_type)
