"""Webhooks router - Gmail Pub/Sub push notifications."""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from inboxsync.core.config import settings
from inboxsync.core.deps import get_db
from inboxsync.core.errors import MalformedNotification
from inboxsync.core.structured_logging import build_log_context
from inboxsync.services import webhook_service

router = APIRouter()
logger = logging.getLogger(__name__)

ACK = {"status": "ok"}
ROUTE = "webhooks.gmail"


async def _read_capped_body(request: Request, limit: int) -> bytes | None:
    """Read at most ``limit`` bytes; None when the payload is larger."""
    content_length = request.headers.get("content-length")
    if content_length:
        try:
            if int(content_length) > limit:
                return None
        except ValueError:
            pass

    chunks: list[bytes] = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > limit:
            return None
        chunks.append(chunk)
    return b"".join(chunks)


@router.post("/gmail")
async def receive_gmail_push(
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Receive a Gmail push notification from Pub/Sub.

    Always acknowledges with 200 {"status": "ok"}: Pub/Sub redelivers
    anything else, and a bad payload will not get better on redelivery.
    The history fetch runs on the worker from a durable job.
    """
    body = await _read_capped_body(request, settings.WEBHOOK_MAX_PAYLOAD_BYTES)
    if body is None:
        logger.warning(
            "Gmail push payload over %s bytes dropped",
            settings.WEBHOOK_MAX_PAYLOAD_BYTES,
            extra=build_log_context(route=ROUTE),
        )
        return ACK

    try:
        notification = webhook_service.decode_notification(body)
    except MalformedNotification as exc:
        logger.warning("Malformed Gmail push notification: %s", exc, extra=build_log_context(route=ROUTE))
        return ACK

    try:
        webhook_service.dispatch_history_fetch(db, notification)
    except Exception:
        db.rollback()
        logger.exception(
            "Failed to queue history fetch for Gmail notification",
            extra=build_log_context(email=notification.email_address, route=ROUTE),
        )
    return ACK
