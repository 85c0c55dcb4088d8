"""Gmail lifecycle job handlers."""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


async def process_token_refresh(db, job) -> None:
    """
    Refresh one account's access token, or sweep near-expiry accounts.

    Payload:
      - account_id (optional): targeted refresh; absent means bulk sweep
    """
    from inboxsync.services import token_refresh_service

    result = await token_refresh_service.run(db, job)
    if isinstance(result, token_refresh_service.SweepResult) and result.failed:
        logger.warning(
            "Token refresh sweep job %s finished with %s failures",
            job.id,
            result.failed,
        )


async def process_watch_renew(db, job) -> None:
    """Renew the Gmail watch for the job's account and queue the next renewal."""
    from inboxsync.services import watch_renewal_service

    await watch_renewal_service.run(db, job)


async def process_watch_reconcile(db, job) -> None:
    from inboxsync.services import watch_renewal_service

    watch_renewal_service.reconcile(db)


async def process_history_fetch(db, job) -> None:
    """
    Fetch Gmail history for a push notification.

    Payload:
      - email_address (required)
      - history_id (required): passed through unchanged
    """
    from inboxsync.services import webhook_service

    result = await webhook_service.process_history_fetch(db, job)
    if result is not None and result.message_ids:
        logger.info("History fetch job %s found %s new messages", job.id, len(result.message_ids))
