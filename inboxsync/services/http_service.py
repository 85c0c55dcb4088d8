"""HTTP helpers with retry/backoff and error classification for Google calls."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable

import httpx
from sqlalchemy.exc import OperationalError

from inboxsync.core.errors import LifecycleError, ProviderTerminal, ProviderTransient

logger = logging.getLogger(__name__)

DEFAULT_RETRY_STATUSES = {408, 429, 500, 502, 503, 504}


async def request_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
    retry_statuses: set[int] | None = None,
) -> httpx.Response:
    """Execute an HTTP request with exponential backoff retries."""
    statuses = retry_statuses or DEFAULT_RETRY_STATUSES
    attempts = max(max_attempts, 1)

    for attempt in range(attempts):
        try:
            response = await request_fn()
        except httpx.RequestError as exc:
            if attempt >= attempts - 1:
                raise
            delay = min(max_delay, base_delay * (2**attempt))
            if delay:
                delay = delay + random.uniform(0, delay / 2)
            logger.warning("HTTP request failed, retrying", exc_info=exc)
            if delay:
                await asyncio.sleep(delay)
            continue

        if response.status_code in statuses and attempt < attempts - 1:
            delay = min(max_delay, base_delay * (2**attempt))
            if delay:
                delay = delay + random.uniform(0, delay / 2)
            logger.warning("HTTP request returned %s, retrying", response.status_code)
            if delay:
                await asyncio.sleep(delay)
            continue

        return response

    return response


def _error_detail(response: httpx.Response) -> tuple[str | None, str | None]:
    """Pull (error code, message) out of a Google error body."""
    try:
        data = response.json()
    except ValueError:
        text = response.text.strip()
        return None, text[:200] or None
    if not isinstance(data, dict):
        return None, None
    error = data.get("error")
    if isinstance(error, str):
        # OAuth token endpoint: {"error": "invalid_grant", "error_description": "..."}
        return error, data.get("error_description")
    if isinstance(error, dict):
        # Gmail API: {"error": {"code": 404, "message": "...", "status": "NOT_FOUND"}}
        return error.get("status"), error.get("message")
    return None, None


def classify_response(response: httpx.Response, *, operation: str) -> LifecycleError:
    """
    Map a failed provider response onto the error taxonomy.

    408/429/5xx are transient. Everything else in 4xx is terminal, including
    400 invalid_grant (revoked refresh token), 401 and 403.
    """
    status = response.status_code
    code, message = _error_detail(response)
    detail = message or code or "unknown error"
    text = f"{operation} failed with HTTP {status}: {detail}"
    if status in DEFAULT_RETRY_STATUSES or status >= 500:
        return ProviderTransient(text, status_code=status)
    if code == "invalid_grant":
        text = f"{operation} failed with HTTP {status}: invalid_grant ({detail})"
    return ProviderTerminal(text, status_code=status)


def raise_for_provider_status(response: httpx.Response, *, operation: str) -> None:
    if response.status_code >= 400:
        raise classify_response(response, operation=operation)


def classify_exception(exc: BaseException) -> bool:
    """Return True when the failure should be retried by the job queue."""
    if isinstance(exc, LifecycleError):
        return exc.retryable
    if isinstance(exc, (httpx.TimeoutException, httpx.RequestError)):
        return True
    if isinstance(exc, OperationalError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_response(exc.response, operation="request").retryable
    return True
