"""Account linking - entry point called once the OAuth exchange succeeds."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from inboxsync.core.errors import (
    AccountAlreadyConnected,
    AccountConnectedToOtherUser,
    LifecycleError,
)
from inboxsync.core.structured_logging import build_log_context
from inboxsync.db.enums import LinkFlow
from inboxsync.db.models import ConnectedAccount, User
from inboxsync.services import account_service, token_refresh_service, watch_renewal_service
from inboxsync.utils.datetime_parsing import now_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OAuthGrant:
    """Credentials and identity returned by the OAuth code exchange."""
    email: str
    provider_account_id: str
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    display_name: str | None = None

    def expires_at(self, now: datetime | None = None) -> datetime | None:
        if not self.expires_in:
            return None
        return (now or now_utc()) + timedelta(seconds=self.expires_in)


@dataclass(frozen=True)
class LinkResult:
    user: User
    account: ConnectedAccount
    refresh_job_id: UUID | None
    watch_job_id: UUID | None
    watch_started: bool


def _resolve_user(
    db: Session,
    flow: LinkFlow,
    grant: OAuthGrant,
    user_id: UUID | None,
) -> User:
    existing = account_service.get_account_by_provider_identity(db, grant.provider_account_id)

    if flow is LinkFlow.LOGIN:
        if existing is not None:
            return existing.user
        return account_service.get_or_create_user(db, grant.email, grant.display_name)

    if flow is LinkFlow.ADD_ACCOUNT:
        if user_id is None:
            raise ValueError("user_id is required to add an account")
        user = account_service.get_user(db, user_id)
        if user is None:
            raise ValueError(f"User {user_id} not found")
        if existing is not None:
            if existing.user_id == user.id:
                raise AccountAlreadyConnected(f"{grant.email} is already connected")
            raise AccountConnectedToOtherUser(f"{grant.email} is connected to another user")
        return user

    raise ValueError(f"Unsupported link flow: {flow}")


async def complete_link(
    db: Session,
    flow: LinkFlow,
    grant: OAuthGrant,
    *,
    user_id: UUID | None = None,
) -> LinkResult:
    """
    Persist the linked mailbox and start its lifecycle.

    LOGIN finds or creates the user that owns the mailbox. ADD_ACCOUNT
    attaches the mailbox to ``user_id`` and refuses mailboxes that are
    already linked. Afterwards the token refresh is scheduled and the Gmail
    watch is established; a failed first watch falls back to a queued
    renewal so the worker retries it.
    """
    user = _resolve_user(db, flow, grant, user_id)
    account = account_service.upsert_account(
        db,
        user=user,
        email=grant.email,
        provider_account_id=grant.provider_account_id,
        access_token=grant.access_token,
        refresh_token=grant.refresh_token,
        expires_at=grant.expires_at(),
    )
    db.commit()
    db.refresh(account)

    context = build_log_context(account_id=str(account.id), user_id=str(user.id))
    logger.info("Linked Gmail account %s via %s flow", account.id, flow.value, extra=context)

    refresh_job_id = token_refresh_service.schedule(db, account)

    watch_started = False
    watch_job_id: UUID | None
    try:
        outcome = await watch_renewal_service.start_watch(db, account)
        watch_started = True
        watch_job_id = outcome.next_job_id
    except LifecycleError as exc:
        logger.warning(
            "Initial Gmail watch failed for account %s: %s",
            account.id,
            exc,
            extra=context,
        )
        db.refresh(account)
        watch_job_id = watch_renewal_service.schedule(db, account, run_at=now_utc())

    db.refresh(account)
    return LinkResult(
        user=user,
        account=account,
        refresh_job_id=refresh_job_id,
        watch_job_id=watch_job_id,
        watch_started=watch_started,
    )
