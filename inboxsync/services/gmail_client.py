"""Google OAuth and Gmail API client.

Thin async wrappers over the token endpoint and users.watch / users.stop /
users.history.list. Each call is bounded by PROVIDER_TIMEOUT_SECONDS and
every failure surfaces as ProviderTransient or ProviderTerminal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable

import httpx

from inboxsync.core.config import settings
from inboxsync.core.errors import ProviderTerminal, ProviderTransient
from inboxsync.services import http_service
from inboxsync.utils.datetime_parsing import from_epoch_millis, now_utc

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GMAIL_WATCH_URL = "https://gmail.googleapis.com/gmail/v1/users/me/watch"
GMAIL_STOP_URL = "https://gmail.googleapis.com/gmail/v1/users/me/stop"
GMAIL_HISTORY_URL = "https://gmail.googleapis.com/gmail/v1/users/me/history"

DEFAULT_EXPIRES_IN_SECONDS = 3600
HISTORY_PAGE_SIZE = 500


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_at: datetime
    refresh_token: str | None = None
    scope: str | None = None


@dataclass(frozen=True)
class WatchGrant:
    history_id: str | None
    expires_at: datetime | None


@dataclass(frozen=True)
class HistoryPage:
    records: list[dict] = field(default_factory=list)
    next_page_token: str | None = None
    history_id: str | None = None


def build_http_client() -> httpx.AsyncClient:
    """AsyncClient used for every provider call (patched in tests)."""
    return httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS)


async def _send(
    operation: str,
    request_fn: Callable[[httpx.AsyncClient], Awaitable[httpx.Response]],
) -> httpx.Response:
    try:
        async with build_http_client() as client:
            response = await http_service.request_with_retries(
                lambda: request_fn(client),
                max_attempts=settings.PROVIDER_MAX_ATTEMPTS,
                base_delay=settings.PROVIDER_RETRY_BASE_DELAY,
            )
    except httpx.TimeoutException as exc:
        raise ProviderTransient(f"{operation} timed out") from exc
    except httpx.RequestError as exc:
        raise ProviderTransient(f"{operation} request failed: {type(exc).__name__}") from exc
    http_service.raise_for_provider_status(response, operation=operation)
    return response


def _json_object(response: httpx.Response, operation: str) -> dict:
    try:
        data = response.json()
    except ValueError as exc:
        raise ProviderTransient(f"{operation} returned a non-JSON body") from exc
    if not isinstance(data, dict):
        raise ProviderTransient(f"{operation} response was not an object")
    return data


def _parse_expires_in(value: object) -> int:
    try:
        seconds = int(str(value))
    except (TypeError, ValueError):
        return DEFAULT_EXPIRES_IN_SECONDS
    return seconds if seconds > 0 else DEFAULT_EXPIRES_IN_SECONDS


async def refresh_access_token(refresh_token: str) -> TokenGrant:
    """Exchange a refresh token for a new access token."""
    response = await _send(
        "token refresh",
        lambda client: client.post(
            GOOGLE_TOKEN_URL,
            data={
                "client_id": settings.GOOGLE_CLIENT_ID,
                "client_secret": settings.GOOGLE_CLIENT_SECRET,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        ),
    )
    data = _json_object(response, "token refresh")
    access_token = data.get("access_token")
    if not access_token:
        raise ProviderTerminal("token refresh response did not include an access_token")
    expires_in = _parse_expires_in(data.get("expires_in"))
    return TokenGrant(
        access_token=str(access_token),
        expires_at=now_utc() + timedelta(seconds=expires_in),
        refresh_token=data.get("refresh_token"),
        scope=data.get("scope"),
    )


async def start_watch(
    access_token: str,
    *,
    topic_name: str,
    label_ids: list[str] | None = None,
) -> WatchGrant:
    """Call users.watch to (re)subscribe a mailbox to push notifications."""
    payload: dict[str, object] = {"topicName": topic_name}
    if label_ids:
        payload["labelIds"] = label_ids
        payload["labelFilterBehavior"] = "INCLUDE"
    response = await _send(
        "gmail watch",
        lambda client: client.post(
            GMAIL_WATCH_URL,
            headers={"Authorization": f"Bearer {access_token}"},
            json=payload,
        ),
    )
    data = _json_object(response, "gmail watch")
    history_id = data.get("historyId")
    return WatchGrant(
        history_id=str(history_id) if history_id is not None else None,
        expires_at=from_epoch_millis(data.get("expiration")),
    )


async def stop_watch(access_token: str) -> None:
    """Call users.stop. Google answers 204 with an empty body."""
    await _send(
        "gmail stop",
        lambda client: client.post(
            GMAIL_STOP_URL,
            headers={"Authorization": f"Bearer {access_token}"},
        ),
    )


async def list_history(
    access_token: str,
    *,
    start_history_id: str,
    page_token: str | None = None,
) -> HistoryPage:
    """Fetch one page of users.history.list (messageAdded only)."""
    params = {
        "startHistoryId": str(start_history_id),
        "historyTypes": "messageAdded",
        "maxResults": HISTORY_PAGE_SIZE,
    }
    if page_token:
        params["pageToken"] = page_token
    response = await _send(
        "gmail history",
        lambda client: client.get(
            GMAIL_HISTORY_URL,
            headers={"Authorization": f"Bearer {access_token}"},
            params=params,
        ),
    )
    data = _json_object(response, "gmail history")
    records = data.get("history") or []
    next_page_token = data.get("nextPageToken")
    history_id = data.get("historyId")
    return HistoryPage(
        records=[record for record in records if isinstance(record, dict)],
        next_page_token=str(next_page_token) if next_page_token else None,
        history_id=str(history_id) if history_id is not None else None,
    )
