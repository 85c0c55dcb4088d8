"""Enums shared by models, services and routers."""

from enum import Enum


class Provider(str, Enum):
    """Identity providers a connected account can belong to."""
    GOOGLE = "google"


class JobType(str, Enum):
    """Types of background jobs."""
    TOKEN_REFRESH = "token_refresh"
    WATCH_RENEW = "watch_renew"
    WATCH_RECONCILE = "watch_reconcile"
    HISTORY_FETCH = "history_fetch"


class JobStatus(str, Enum):
    """Status of background jobs."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)


class WatchState(str, Enum):
    """
    Lifecycle of a mailbox push-notification subscription.

    unwatched -> scheduled -> running -> scheduled (renewed, next job queued)
                                      -> scheduled (retry pending)
                                      -> broken    (terminal or exhausted)
    """
    UNWATCHED = "unwatched"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    BROKEN = "broken"


class LinkFlow(str, Enum):
    """OAuth completion intent, chosen when the consent redirect is built."""
    LOGIN = "login"
    ADD_ACCOUNT = "add_account"


DEFAULT_JOB_STATUS = JobStatus.PENDING
DEFAULT_WATCH_STATE = WatchState.UNWATCHED
