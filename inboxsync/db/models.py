"""SQLAlchemy ORM models for users, connected mailboxes and background jobs."""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inboxsync.db.base import Base
from inboxsync.db.enums import DEFAULT_JOB_STATUS, DEFAULT_WATCH_STATE, Provider
from inboxsync.utils.datetime_parsing import now_utc

JSONType = JSON().with_variant(JSONB(), "postgresql")


class User(Base):
    """Application user. Owns one or more connected mailboxes."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=now_utc, nullable=False)

    accounts: Mapped[list["ConnectedAccount"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class ConnectedAccount(Base):
    """
    A Gmail mailbox linked to a user.

    Tokens are stored Fernet-encrypted. ``last_history_id`` is the sync
    cursor; it is kept as a string and compared numerically.
    """
    __tablename__ = "connected_accounts"
    __table_args__ = (
        UniqueConstraint("provider", "provider_account_id", name="uq_account_provider_identity"),
        UniqueConstraint("user_id", "email", name="uq_account_user_email"),
        Index("idx_accounts_email", "email"),
        Index("idx_accounts_token_expiry", "access_token_expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    provider: Mapped[str] = mapped_column(
        String(20), nullable=False, default=Provider.GOOGLE.value
    )
    provider_account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    access_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    access_token_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    token_last_refreshed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    token_last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    last_history_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    watch_state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DEFAULT_WATCH_STATE.value
    )
    watch_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    watch_last_renewed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    watch_last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=now_utc, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=now_utc, onupdate=now_utc, nullable=False
    )

    user: Mapped["User"] = relationship(back_populates="accounts")
    jobs: Mapped[list["Job"]] = relationship(
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Job(Base):
    """
    Durable background job.

    Used for: token refresh, watch renewal, watch reconcile sweeps and
    history fetches dispatched by push notifications. The worker polls for
    pending jobs and processes them. Per-account and notification keys are
    held only while a job is pending or running, so at most one active job
    exists per key. Sweep bucket keys are kept after completion so each
    window runs once.
    """
    __tablename__ = "jobs"
    __table_args__ = (
        Index("idx_jobs_pending", "status", "run_at"),
        Index("idx_jobs_account", "account_id", "job_type"),
        Index(
            "uq_job_idempotency",
            "idempotency_key",
            unique=True,
            postgresql_where=text("idempotency_key IS NOT NULL"),
            sqlite_where=text("idempotency_key IS NOT NULL"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("connected_accounts.id", ondelete="CASCADE"),
        nullable=True,
    )

    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    run_at: Mapped[datetime] = mapped_column(default=now_utc, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DEFAULT_JOB_STATUS.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=now_utc, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    idempotency_key: Mapped[str | None] = mapped_column(String(512), nullable=True)

    account: Mapped["ConnectedAccount | None"] = relationship(back_populates="jobs")
