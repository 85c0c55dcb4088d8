"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database, schema rebuilt for each test
- Fake Google endpoints served through httpx.MockTransport
- HTTPX AsyncClient against the FastAPI app
- User / connected account factories
"""
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Generator

from cryptography.fernet import Fernet

# Settings are read at import time; configure them before importing inboxsync.
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["FERNET_KEY"] = Fernet.generate_key().decode()
os.environ["GOOGLE_CLIENT_ID"] = "test-client-id"
os.environ["GOOGLE_CLIENT_SECRET"] = "test-client-secret"
os.environ["GMAIL_PUSH_TOPIC"] = "projects/test-project/topics/gmail-push"
os.environ["INTERNAL_SECRET"] = "test-internal-secret"
os.environ["PROVIDER_MAX_ATTEMPTS"] = "1"
os.environ["WORKER_SCHEDULE_SWEEPS"] = "false"

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from inboxsync.core.deps import get_db
from inboxsync.core.encryption import encrypt_token
from inboxsync.db.base import Base
from inboxsync.db.models import ConnectedAccount, User
from inboxsync.db.session import SessionLocal, engine
from inboxsync.main import app
from inboxsync.services import gmail_client


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Fresh schema per test.

    The in-memory database lives on a single shared connection, so sessions
    opened by the worker or the app see the same data as this one.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def make_user(db: Session) -> Callable[..., User]:
    def _make(email: str | None = None) -> User:
        user = User(
            id=uuid.uuid4(),
            email=email or f"user-{uuid.uuid4().hex[:8]}@example.com",
            display_name="Test User",
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture(scope="function")
def make_account(db: Session, make_user) -> Callable[..., ConnectedAccount]:
    def _make(
        *,
        user: User | None = None,
        email: str | None = None,
        access_token: str | None = "access-old",
        refresh_token: str | None = "refresh-1",
        expires_in: int | None = 120,
        last_history_id: str | None = None,
        watch_state: str = "unwatched",
        watch_expires_at: datetime | None = None,
    ) -> ConnectedAccount:
        owner = user or make_user()
        address = email or f"mbox-{uuid.uuid4().hex[:8]}@example.com"
        account = ConnectedAccount(
            id=uuid.uuid4(),
            user_id=owner.id,
            email=address,
            provider="google",
            provider_account_id=f"google-{uuid.uuid4().hex[:12]}",
            access_token_encrypted=encrypt_token(access_token) if access_token else None,
            refresh_token_encrypted=encrypt_token(refresh_token) if refresh_token else None,
            access_token_expires_at=(
                datetime.now(timezone.utc) + timedelta(seconds=expires_in)
                if expires_in is not None
                else None
            ),
            last_history_id=last_history_id,
            watch_state=watch_state,
            watch_expires_at=watch_expires_at,
        )
        db.add(account)
        db.commit()
        return account

    return _make


# =============================================================================
# Fake Google endpoints
# =============================================================================

class FakeGoogle:
    """Scripted responses for the token, watch, stop and history endpoints."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], list] = {}

    def on(self, method: str, url: str, *responses) -> None:
        """Queue responses for an endpoint; the last one repeats."""
        self._routes[(method.upper(), url)] = list(responses)

    def calls(self, url: str) -> list[httpx.Request]:
        return [request for request in self.requests if _base_url(request) == url]

    @staticmethod
    def token_response(access_token: str = "access-new", expires_in: int = 3600, **extra) -> httpx.Response:
        return httpx.Response(
            200,
            json={"access_token": access_token, "expires_in": expires_in, "token_type": "Bearer", **extra},
        )

    @staticmethod
    def watch_response(history_id: str = "1000", expires_in_days: int = 7) -> httpx.Response:
        expiration = datetime.now(timezone.utc) + timedelta(days=expires_in_days)
        return httpx.Response(
            200,
            json={"historyId": history_id, "expiration": str(int(expiration.timestamp() * 1000))},
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._routes.get((request.method, _base_url(request)))
        if not queue:
            return httpx.Response(404, json={"error": {"code": 404, "message": "not routed"}})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(request)
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)


def _base_url(request: httpx.Request) -> str:
    return f"{request.url.scheme}://{request.url.host}{request.url.path}"


@pytest.fixture(scope="function")
def google(monkeypatch) -> FakeGoogle:
    fake = FakeGoogle()
    monkeypatch.setattr(
        gmail_client,
        "build_http_client",
        lambda: httpx.AsyncClient(transport=httpx.MockTransport(fake.handler)),
    )
    return fake


# =============================================================================
# HTTP client
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session):
    """AsyncClient against the app, sharing the test session."""

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
