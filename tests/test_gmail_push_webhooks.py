"""Tests for Gmail push ingestion: decoding, acknowledgement and dispatch."""

from __future__ import annotations

import base64
import json

import httpx
import pytest

from inboxsync.core.errors import MalformedNotification, ProviderTransient
from inboxsync.db.enums import JobStatus, JobType
from inboxsync.db.models import Job
from inboxsync.services import (
    account_service,
    gmail_client,
    history_sync_service,
    webhook_service,
)

ACK = {"status": "ok"}


def _push_payload(
    *,
    email_address: str | None = "a@x.com",
    history_id: str | int | None = "123",
    message_id: str = "pubsub-msg-1",
    urlsafe: bool = False,
) -> dict:
    message: dict = {}
    if email_address is not None:
        message["emailAddress"] = email_address
    if history_id is not None:
        message["historyId"] = history_id
    raw = json.dumps(message).encode("utf-8")
    encoder = base64.urlsafe_b64encode if urlsafe else base64.b64encode
    return {
        "message": {"data": encoder(raw).decode("utf-8"), "messageId": message_id},
        "subscription": "projects/test-project/subscriptions/gmail-push",
    }


def _history_jobs(db) -> list[Job]:
    return db.query(Job).filter(Job.job_type == JobType.HISTORY_FETCH.value).all()


@pytest.mark.asyncio
async def test_valid_notification_acknowledges_and_dispatches_once(client, db):
    response = await client.post("/webhooks/gmail", json=_push_payload())

    assert response.status_code == 200
    assert response.json() == ACK
    jobs = _history_jobs(db)
    assert len(jobs) == 1
    assert jobs[0].payload["email_address"] == "a@x.com"
    assert jobs[0].payload["history_id"] == "123"
    assert jobs[0].payload["message_id"] == "pubsub-msg-1"
    assert jobs[0].status == JobStatus.PENDING.value


@pytest.mark.asyncio
async def test_redelivered_notification_is_not_queued_twice(client, db):
    await client.post("/webhooks/gmail", json=_push_payload())
    response = await client.post("/webhooks/gmail", json=_push_payload(message_id="pubsub-msg-2"))

    assert response.json() == ACK
    assert len(_history_jobs(db)) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        b"",
        b"not json at all",
        json.dumps({"message": {"data": "%%% not base64 %%%"}}).encode(),
        json.dumps({"message": {}}).encode(),
        json.dumps(_push_payload(history_id=None)).encode(),
        json.dumps(_push_payload(email_address=None)).encode(),
        json.dumps(
            {"message": {"data": base64.b64encode(b"plain text, not json").decode()}}
        ).encode(),
        json.dumps(["unexpected", "array"]).encode(),
    ],
)
async def test_malformed_notifications_are_acknowledged_without_dispatch(client, db, body):
    response = await client.post(
        "/webhooks/gmail",
        content=body,
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json() == ACK
    assert _history_jobs(db) == []


@pytest.mark.asyncio
async def test_oversized_payload_is_acknowledged_without_dispatch(client, db, monkeypatch):
    from inboxsync.core.config import settings

    monkeypatch.setattr(settings, "WEBHOOK_MAX_PAYLOAD_BYTES", 64)
    response = await client.post("/webhooks/gmail", json=_push_payload())

    assert response.status_code == 200
    assert response.json() == ACK
    assert _history_jobs(db) == []


@pytest.mark.asyncio
async def test_enqueue_failure_is_still_acknowledged(client, db, monkeypatch):
    def broken_dispatch(db, notification):
        raise RuntimeError("queue unavailable")

    monkeypatch.setattr(webhook_service, "dispatch_history_fetch", broken_dispatch)
    response = await client.post("/webhooks/gmail", json=_push_payload())

    assert response.status_code == 200
    assert response.json() == ACK


def test_decode_notification_accepts_urlsafe_base64_and_numeric_history():
    notification = webhook_service.decode_notification(
        json.dumps(_push_payload(email_address="User@X.com", history_id=98765, urlsafe=True))
    )
    assert notification.email_address == "user@x.com"
    assert notification.history_id == "98765"
    assert notification.message_id == "pubsub-msg-1"


def test_decode_notification_tolerates_missing_padding():
    raw = base64.b64encode(json.dumps({"emailAddress": "a@x.com", "historyId": "1"}).encode())
    body = {"message": {"data": raw.decode().rstrip("=")}}
    assert webhook_service.decode_notification(body).history_id == "1"


@pytest.mark.parametrize("history_id", ["", "abc", -5, True])
def test_decode_notification_rejects_bad_history_id(history_id):
    with pytest.raises(MalformedNotification):
        webhook_service.decode_notification(_push_payload(history_id=history_id))


# =============================================================================
# Worker side
# =============================================================================


def _history_job(email_address="a@x.com", history_id="123"):
    return type(
        "Job",
        (),
        {
            "id": "job-1",
            "job_type": JobType.HISTORY_FETCH.value,
            "payload": {"email_address": email_address, "history_id": history_id},
        },
    )()


@pytest.mark.asyncio
async def test_history_fetch_job_passes_exact_history_id(db, make_account, monkeypatch):
    account = make_account(email="a@x.com", expires_in=3600)
    calls: list[tuple] = []

    async def fake_fetch(db, account, history_id):
        calls.append((account.id, history_id))
        return history_sync_service.HistoryFetchResult(cursor=history_id)

    monkeypatch.setattr(history_sync_service, "fetch_history_changes", fake_fetch)

    await webhook_service.process_history_fetch(db, _history_job())
    await webhook_service.process_history_fetch(db, _history_job())

    assert calls == [(account.id, "123"), (account.id, "123")]


@pytest.mark.asyncio
async def test_history_fetch_job_drops_unknown_mailbox(db, monkeypatch):
    async def fake_fetch(db, account, history_id):
        raise AssertionError("should not fetch")

    monkeypatch.setattr(history_sync_service, "fetch_history_changes", fake_fetch)

    assert await webhook_service.process_history_fetch(db, _history_job("nobody@x.com")) is None


@pytest.mark.asyncio
async def test_history_fetch_job_drops_account_without_usable_token(db, make_account, monkeypatch):
    make_account(email="a@x.com", refresh_token=None, expires_in=-30)

    async def fake_fetch(db, account, history_id):
        raise AssertionError("should not fetch")

    monkeypatch.setattr(history_sync_service, "fetch_history_changes", fake_fetch)

    assert await webhook_service.process_history_fetch(db, _history_job()) is None


@pytest.mark.asyncio
async def test_history_fetch_job_refreshes_lapsed_token_first(db, make_account, google, monkeypatch):
    account = make_account(email="a@x.com", refresh_token="refresh-1", expires_in=-30)
    google.on("POST", gmail_client.GOOGLE_TOKEN_URL, google.token_response("access-fresh", 3600))
    seen: list[str | None] = []

    async def fake_fetch(db, account, history_id):
        seen.append(account_service.get_access_token(account))
        return history_sync_service.HistoryFetchResult(cursor=history_id)

    monkeypatch.setattr(history_sync_service, "fetch_history_changes", fake_fetch)

    result = await webhook_service.process_history_fetch(db, _history_job())

    assert result is not None
    assert seen == ["access-fresh"]
    assert len(google.calls(gmail_client.GOOGLE_TOKEN_URL)) == 1
    db.expire_all()
    assert account_service.has_usable_access_token(account_service.get_account(db, account.id))


@pytest.mark.asyncio
async def test_history_fetch_job_retries_when_refresh_is_unavailable(db, make_account, google, monkeypatch):
    make_account(email="a@x.com", refresh_token="refresh-1", expires_in=-30)
    google.on("POST", gmail_client.GOOGLE_TOKEN_URL, httpx.Response(503))

    async def fake_fetch(db, account, history_id):
        raise AssertionError("should not fetch")

    monkeypatch.setattr(history_sync_service, "fetch_history_changes", fake_fetch)

    with pytest.raises(ProviderTransient):
        await webhook_service.process_history_fetch(db, _history_job())
