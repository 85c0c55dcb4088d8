"""Tests for token refresh scheduling, targeted refresh and the bulk sweep."""

import uuid
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from inboxsync.core.errors import (
    AccountNotFound,
    AccountNotRefreshable,
    ProviderTerminal,
    ProviderTransient,
)
from inboxsync.db.enums import JobStatus, JobType
from inboxsync.db.models import Job
from inboxsync.services import account_service, gmail_client, job_service, token_refresh_service
from inboxsync.utils.datetime_parsing import as_utc, now_utc

TOKEN_URL = gmail_client.GOOGLE_TOKEN_URL


def _refresh_job(account_id=None):
    return type("Job", (), {"id": uuid.uuid4(), "account_id": account_id, "payload": {}})()


def test_schedule_enqueues_single_job_at_lead_time(db, make_account):
    account = make_account()
    before = now_utc()

    job_id = token_refresh_service.schedule(db, account)

    job = job_service.get_job(db, job_id)
    assert job.job_type == JobType.TOKEN_REFRESH.value
    assert job.account_id == account.id
    assert job.max_attempts == 3
    expected = before + timedelta(seconds=3300)
    assert abs((as_utc(job.run_at) - expected).total_seconds()) < 5


def test_schedule_twice_keeps_one_pending_job(db, make_account):
    account = make_account()

    first = token_refresh_service.schedule(db, account)
    second = token_refresh_service.schedule(db, account)

    assert first is not None
    assert second is None
    pending = job_service.list_account_jobs(
        db, account.id, JobType.TOKEN_REFRESH, JobStatus.PENDING
    )
    assert len(pending) == 1


@pytest.mark.asyncio
async def test_targeted_refresh_updates_token_and_expiry(db, make_account, google):
    account = make_account(access_token="access-old", refresh_token="refresh-1", expires_in=60)
    previous_expiry = as_utc(account.access_token_expires_at)
    google.on("POST", TOKEN_URL, google.token_response("access-new", 3600))

    outcome = await token_refresh_service.run(db, _refresh_job(account.id))

    db.expire_all()
    stored = account_service.get_account(db, account.id)
    assert outcome.account_id == account.id
    assert account_service.get_access_token(stored) == "access-new"
    assert as_utc(stored.access_token_expires_at) > previous_expiry
    assert stored.token_last_refreshed_at is not None

    sent = parse_qs(google.calls(TOKEN_URL)[0].content.decode())
    assert sent["grant_type"] == ["refresh_token"]
    assert sent["refresh_token"] == ["refresh-1"]


@pytest.mark.asyncio
async def test_targeted_refresh_stores_rotated_refresh_token(db, make_account, google):
    account = make_account(refresh_token="refresh-1")
    google.on("POST", TOKEN_URL, google.token_response("access-new", 3600, refresh_token="refresh-2"))

    await token_refresh_service.run(db, _refresh_job(account.id))

    db.expire_all()
    assert account_service.get_refresh_token(account_service.get_account(db, account.id)) == "refresh-2"


@pytest.mark.asyncio
async def test_targeted_refresh_without_refresh_token_is_terminal(db, make_account, google):
    account = make_account(access_token="access-old", refresh_token=None, expires_in=60)
    before_token = account.access_token_encrypted
    before_expiry = account.access_token_expires_at

    with pytest.raises(AccountNotRefreshable) as exc_info:
        await token_refresh_service.run(db, _refresh_job(account.id))

    assert exc_info.value.retryable is False
    assert google.requests == []
    db.expire_all()
    stored = account_service.get_account(db, account.id)
    assert stored.access_token_encrypted == before_token
    assert stored.access_token_expires_at == before_expiry


@pytest.mark.asyncio
async def test_targeted_refresh_missing_account(db, google):
    with pytest.raises(AccountNotFound):
        await token_refresh_service.run(db, _refresh_job(uuid.uuid4()))


@pytest.mark.asyncio
async def test_revoked_refresh_token_is_terminal_and_recorded(db, make_account, google):
    account = make_account()
    google.on(
        "POST",
        TOKEN_URL,
        httpx.Response(400, json={"error": "invalid_grant", "error_description": "revoked"}),
    )

    with pytest.raises(ProviderTerminal):
        await token_refresh_service.run(db, _refresh_job(account.id))

    db.expire_all()
    stored = account_service.get_account(db, account.id)
    assert "invalid_grant" in stored.token_last_error
    assert account_service.get_access_token(stored) == "access-old"


@pytest.mark.asyncio
async def test_rate_limited_refresh_is_retryable(db, make_account, google):
    account = make_account()
    google.on("POST", TOKEN_URL, httpx.Response(429, json={"error": "rate_limit_exceeded"}))

    with pytest.raises(ProviderTransient) as exc_info:
        await token_refresh_service.run(db, _refresh_job(account.id))

    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_bulk_sweep_isolates_failures(db, make_account, google):
    healthy = [make_account(refresh_token=f"good-{i}", expires_in=60) for i in range(3)]
    failing = [make_account(refresh_token=f"bad-{i}", expires_in=60) for i in range(2)]
    not_due = make_account(refresh_token="later", expires_in=7200)
    no_refresh = make_account(refresh_token=None, expires_in=60)
    previous = {account.id: as_utc(account.access_token_expires_at) for account in healthy}

    def respond(request: httpx.Request) -> httpx.Response:
        refresh_token = parse_qs(request.content.decode())["refresh_token"][0]
        if refresh_token.startswith("bad-"):
            return httpx.Response(400, json={"error": "invalid_grant"})
        return httpx.Response(200, json={"access_token": f"new-{refresh_token}", "expires_in": 3600})

    google.on("POST", TOKEN_URL, respond)

    result = await token_refresh_service.run(db, _refresh_job(None))

    assert result.attempted == 5
    assert result.succeeded == 3
    assert result.failed == 2
    assert {account_id for account_id, _ in result.failures} == {account.id for account in failing}

    db.expire_all()
    for account in healthy:
        stored = account_service.get_account(db, account.id)
        assert as_utc(stored.access_token_expires_at) > previous[account.id]
    refreshed_tokens = {
        parse_qs(request.content.decode())["refresh_token"][0] for request in google.calls(TOKEN_URL)
    }
    assert "later" not in refreshed_tokens
    assert not_due.id not in {account_id for account_id, _ in result.failures}
    assert no_refresh.id not in {account_id for account_id, _ in result.failures}


@pytest.mark.asyncio
async def test_bulk_sweep_includes_tokens_without_expiry(db, make_account, google):
    account = make_account(expires_in=None)
    google.on("POST", TOKEN_URL, google.token_response())

    result = await token_refresh_service.run(db, _refresh_job(None))

    assert result.attempted == 1
    assert result.succeeded == 1
    db.expire_all()
    assert account_service.get_account(db, account.id).access_token_expires_at is not None


def test_schedule_sweep_once_per_window(db):
    now = now_utc()

    first = token_refresh_service.schedule_sweep(db, now=now)
    second = token_refresh_service.schedule_sweep(db, now=now)

    assert first is not None
    assert second is None
    sweep = job_service.get_job(db, first)
    assert sweep.account_id is None
    assert db.query(Job).filter(Job.job_type == JobType.TOKEN_REFRESH.value).count() == 1


def test_on_exhausted_records_last_error(db, make_account):
    account = make_account()
    job = _refresh_job(account.id)

    token_refresh_service.on_exhausted(db, job, ProviderTransient("gmail token refresh timed out"))

    db.expire_all()
    assert "timed out" in account_service.get_account(db, account.id).token_last_error


@pytest.mark.asyncio
async def test_sweep_covers_tokens_expiring_before_next_sweep(db, make_account, google):
    between_sweeps = make_account(expires_in=15 * 60)
    google.on("POST", TOKEN_URL, google.token_response())

    result = await token_refresh_service.run(db, _refresh_job(None))

    assert result.attempted == 1
    assert result.succeeded == 1
    db.expire_all()
    stored = account_service.get_account(db, between_sweeps.id)
    assert as_utc(stored.access_token_expires_at) > now_utc() + timedelta(minutes=50)


def test_sweep_window_never_shorter_than_interval_plus_lead(monkeypatch):
    from inboxsync.core.config import settings

    monkeypatch.setattr(settings, "TOKEN_REFRESH_SWEEP_INTERVAL_SECONDS", 1800)
    monkeypatch.setattr(settings, "TOKEN_REFRESH_LEAD_SECONDS", 300)
    monkeypatch.setattr(settings, "TOKEN_REFRESH_SWEEP_WINDOW_SECONDS", 600)
    assert settings.token_refresh_sweep_window_seconds == 2100

    monkeypatch.setattr(settings, "TOKEN_REFRESH_SWEEP_WINDOW_SECONDS", 3600)
    assert settings.token_refresh_sweep_window_seconds == 3600


@pytest.mark.asyncio
async def test_sweep_heartbeats_its_job(db, make_account, google):
    make_account(expires_in=60)
    google.on("POST", TOKEN_URL, google.token_response())
    sweep_id = token_refresh_service.schedule_sweep(db)
    [claimed] = job_service.claim_pending_jobs(db, limit=10)
    assert claimed == sweep_id
    sweep = job_service.get_job(db, sweep_id)
    sweep.started_at = now_utc() - timedelta(hours=1)
    db.commit()

    await token_refresh_service.run(db, sweep)

    db.expire_all()
    assert as_utc(job_service.get_job(db, sweep_id).started_at) > now_utc() - timedelta(minutes=1)
    assert job_service.requeue_stale_jobs(db, stale_after_seconds=600) == 0


@pytest.mark.asyncio
async def test_ensure_fresh_token_leaves_live_token_alone(db, make_account, google):
    account = make_account(expires_in=3600)

    result = await token_refresh_service.ensure_fresh_token(db, account)

    assert result.id == account.id
    assert google.requests == []


@pytest.mark.asyncio
async def test_ensure_fresh_token_refreshes_token_near_expiry(db, make_account, google):
    account = make_account(expires_in=120)
    google.on("POST", TOKEN_URL, google.token_response("access-fresh", 3600))

    result = await token_refresh_service.ensure_fresh_token(db, account)

    assert account_service.get_access_token(result) == "access-fresh"
    assert len(google.calls(TOKEN_URL)) == 1


@pytest.mark.asyncio
async def test_ensure_fresh_token_keeps_usable_token_on_transient_failure(db, make_account, google):
    account = make_account(expires_in=120)
    google.on("POST", TOKEN_URL, httpx.Response(503))

    result = await token_refresh_service.ensure_fresh_token(db, account)

    assert account_service.get_access_token(result) == "access-old"
