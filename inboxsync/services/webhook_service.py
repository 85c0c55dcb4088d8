"""Gmail push ingestion - decode Pub/Sub notifications and dispatch fetches.

The HTTP side only decodes and enqueues a durable ``history_fetch`` job;
the fetch itself runs on the worker so its failures land in job logs and
``jobs.last_error`` instead of disappearing with the request.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from inboxsync.core.config import settings
from inboxsync.core.errors import MalformedNotification, SchedulingFailure
from inboxsync.core.structured_logging import build_log_context
from inboxsync.db.enums import JobType
from inboxsync.db.models import Job
from inboxsync.services import (
    account_service,
    history_sync_service,
    job_service,
    token_refresh_service,
)
from inboxsync.services.history_sync_service import HistoryFetchResult
from inboxsync.utils.normalization import normalize_email, parse_history_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GmailNotification:
    email_address: str
    history_id: str
    message_id: str | None = None


def _b64decode(data: str) -> bytes:
    """Decode standard or URL-safe base64, tolerating missing padding."""
    cleaned = "".join(data.split())
    padded = cleaned + "=" * (-len(cleaned) % 4)
    try:
        return base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError):
        pass
    try:
        return base64.b64decode(padded, altchars=b"-_", validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedNotification("message.data is not valid base64") from exc


def decode_notification(body: bytes | str | dict | None) -> GmailNotification:
    """
    Decode a Pub/Sub push envelope into a GmailNotification.

    Envelope: {"message": {"data": base64(json), "messageId": "..."}, "subscription": "..."}
    Inner payload: {"emailAddress": "...", "historyId": 123}

    Raises MalformedNotification for anything that does not fit.
    """
    if body is None or body == b"" or body == "":
        raise MalformedNotification("Empty request body")

    if isinstance(body, dict):
        envelope = body
    else:
        try:
            envelope = json.loads(body)
        except (UnicodeDecodeError, ValueError) as exc:
            raise MalformedNotification("Request body is not JSON") from exc

    if not isinstance(envelope, dict):
        raise MalformedNotification("Envelope is not an object")
    message = envelope.get("message")
    if not isinstance(message, dict):
        raise MalformedNotification("Envelope has no message")
    data = message.get("data")
    if not isinstance(data, str) or not data.strip():
        raise MalformedNotification("Message has no data")

    raw = _b64decode(data)
    try:
        payload = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedNotification("Decoded data is not JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedNotification("Decoded data is not an object")

    email_address = normalize_email(payload.get("emailAddress"))
    if not email_address:
        raise MalformedNotification("Notification is missing emailAddress")
    raw_history_id = payload.get("historyId")
    if parse_history_id(raw_history_id) is None:
        raise MalformedNotification("Notification is missing historyId")

    message_id = message.get("messageId") or message.get("message_id")
    return GmailNotification(
        email_address=email_address,
        history_id=str(raw_history_id).strip(),
        message_id=str(message_id) if message_id else None,
    )


def history_fetch_key(notification: GmailNotification) -> str:
    return f"{JobType.HISTORY_FETCH.value}:{notification.email_address}:{notification.history_id}"


def dispatch_history_fetch(db: Session, notification: GmailNotification) -> UUID | None:
    """
    Enqueue a durable history fetch for the notification.

    Returns the job id, or None when the same notification is already queued.
    """
    try:
        job = job_service.enqueue_unique_job(
            db,
            JobType.HISTORY_FETCH,
            idempotency_key=history_fetch_key(notification),
            payload={
                "email_address": notification.email_address,
                "history_id": notification.history_id,
                "message_id": notification.message_id,
            },
            max_attempts=settings.JOB_MAX_ATTEMPTS,
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise SchedulingFailure(f"Could not enqueue history fetch: {type(exc).__name__}") from exc

    context = build_log_context(email=notification.email_address, route="webhooks.gmail")
    if job is None:
        logger.info("Duplicate Gmail notification for history %s", notification.history_id, extra=context)
        return None
    logger.info(
        "Queued history fetch job %s for history %s",
        job.id,
        notification.history_id,
        extra=context,
    )
    return job.id


async def process_history_fetch(db: Session, job: Job) -> HistoryFetchResult | None:
    """
    Worker side of a notification.

    An expiring token is refreshed first. No matching account, or an account
    still without a usable token, is logged and dropped; the job completes
    without retry.
    """
    payload = job.payload or {}
    email_address = payload.get("email_address")
    history_id = payload.get("history_id")
    if not email_address or history_id is None:
        raise MalformedNotification("history_fetch job is missing email_address or history_id")

    context = build_log_context(email=email_address, job_id=str(job.id), job_type=job.job_type)
    account = account_service.get_account_by_email(db, email_address, with_user=True)
    if account is None:
        logger.info("Dropping Gmail notification: no connected account", extra=context)
        return None
    account = await token_refresh_service.ensure_fresh_token(db, account)
    if not account_service.has_usable_access_token(account):
        logger.warning(
            "Dropping Gmail notification for account %s: no usable access token",
            account.id,
            extra=context,
        )
        return None

    return await history_sync_service.fetch_history_changes(db, account, history_id)
