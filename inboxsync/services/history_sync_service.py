"""Incremental Gmail history fetch driven by push notifications."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.orm import Session

from inboxsync.core.errors import MalformedNotification, NoAccessToken, ProviderTerminal
from inboxsync.core.structured_logging import build_log_context
from inboxsync.db.models import ConnectedAccount
from inboxsync.services import account_service, gmail_client
from inboxsync.utils.normalization import parse_history_id

logger = logging.getLogger(__name__)

MAX_HISTORY_PAGES = 20
SKIPPED_LABELS = frozenset({"DRAFT"})


@dataclass(frozen=True)
class HistoryFetchResult:
    message_ids: list[str] = field(default_factory=list)
    cursor: str | None = None
    baseline_reset: bool = False


def _new_message_ids(records: list[dict]) -> list[str]:
    message_ids: list[str] = []
    for record in records:
        for added in record.get("messagesAdded") or []:
            message = added.get("message") or {}
            message_id = message.get("id")
            if not message_id:
                continue
            labels = set(message.get("labelIds") or [])
            if labels & SKIPPED_LABELS:
                continue
            message_ids.append(str(message_id))
    return message_ids


def advance_cursor(db: Session, account_id: UUID, candidate: int) -> str | None:
    """Move the history cursor forward under a row lock; never backwards."""
    account = account_service.lock_account(db, account_id)
    if account is None:
        db.rollback()
        return None
    current = parse_history_id(account.last_history_id)
    if current is None or candidate > current:
        account.last_history_id = str(candidate)
    db.commit()
    return account.last_history_id


async def fetch_history_changes(
    db: Session,
    account: ConnectedAccount,
    history_id: str,
) -> HistoryFetchResult:
    """
    Fetch messages added since the stored cursor, up to the notified id.

    Without a stored cursor the notified id becomes the baseline. A notified
    id at or behind the cursor is a replay and does nothing.
    """
    notified = parse_history_id(history_id)
    if notified is None:
        raise MalformedNotification(f"Invalid history id: {history_id!r}")

    context = build_log_context(account_id=str(account.id))
    stored = parse_history_id(account.last_history_id)
    if stored is None:
        cursor = advance_cursor(db, account.id, notified)
        logger.info("Set history baseline for account %s to %s", account.id, cursor, extra=context)
        return HistoryFetchResult(cursor=cursor)

    if notified <= stored:
        logger.info(
            "History %s already processed for account %s (cursor %s)",
            notified,
            account.id,
            stored,
            extra=context,
        )
        return HistoryFetchResult(cursor=account.last_history_id)

    access_token = account_service.get_access_token(account)
    if not access_token:
        raise NoAccessToken(f"Connected account {account.id} has no access token")

    message_ids: list[str] = []
    page_token: str | None = None
    try:
        for _ in range(MAX_HISTORY_PAGES):
            page = await gmail_client.list_history(
                access_token,
                start_history_id=str(stored),
                page_token=page_token,
            )
            message_ids.extend(_new_message_ids(page.records))
            page_token = page.next_page_token
            if not page_token:
                break
        else:
            logger.warning("History fetch for account %s hit the page limit", account.id, extra=context)
    except ProviderTerminal as exc:
        if exc.status_code != 404:
            raise
        # startHistoryId too old; Gmail only keeps about a week of history.
        cursor = advance_cursor(db, account.id, notified)
        logger.warning(
            "History cursor %s expired for account %s; reset baseline to %s",
            stored,
            account.id,
            cursor,
            extra=context,
        )
        return HistoryFetchResult(cursor=cursor, baseline_reset=True)

    unique_ids = list(dict.fromkeys(message_ids))
    cursor = advance_cursor(db, account.id, notified)
    logger.info(
        "Fetched %s new messages for account %s (cursor %s -> %s)",
        len(unique_ids),
        account.id,
        stored,
        cursor,
        extra=context,
    )
    return HistoryFetchResult(message_ids=unique_ids, cursor=cursor)
