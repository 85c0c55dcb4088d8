"""Account service - credential store for connected Gmail mailboxes."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

from inboxsync.core.encryption import decrypt_token, encrypt_token
from inboxsync.db.enums import Provider
from inboxsync.db.models import ConnectedAccount, User
from inboxsync.utils.datetime_parsing import as_utc, now_utc
from inboxsync.utils.normalization import normalize_email

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {
        "access_token_expires_at",
        "token_last_refreshed_at",
        "token_last_error",
        "last_history_id",
        "watch_state",
        "watch_expires_at",
        "watch_last_renewed_at",
        "watch_last_error",
        "is_primary",
    }
)


def get_account(db: Session, account_id: UUID) -> ConnectedAccount | None:
    return db.query(ConnectedAccount).filter(ConnectedAccount.id == account_id).first()


def get_account_by_email(
    db: Session,
    email: str,
    *,
    with_user: bool = False,
) -> ConnectedAccount | None:
    """
    Find a connected account by mailbox address.

    The same mailbox may be linked by several users; the most recently
    updated link wins.
    """
    normalized = normalize_email(email)
    if not normalized:
        return None
    query = db.query(ConnectedAccount).filter(ConnectedAccount.email == normalized)
    if with_user:
        query = query.options(joinedload(ConnectedAccount.user))
    return query.order_by(ConnectedAccount.updated_at.desc()).first()


def lock_account(db: Session, account_id: UUID) -> ConnectedAccount | None:
    """Load an account with a row lock for read-modify-write updates."""
    return (
        db.query(ConnectedAccount)
        .filter(ConnectedAccount.id == account_id)
        .populate_existing()
        .with_for_update()
        .first()
    )


def list_accounts_expiring_within(db: Session, window_seconds: int) -> list[ConnectedAccount]:
    """
    Accounts eligible for a refresh sweep.

    Both tokens must be present, and the access token either has no known
    expiry or expires within the window.
    """
    horizon = now_utc() + timedelta(seconds=window_seconds)
    return (
        db.query(ConnectedAccount)
        .filter(
            ConnectedAccount.access_token_encrypted.isnot(None),
            ConnectedAccount.refresh_token_encrypted.isnot(None),
            or_(
                ConnectedAccount.access_token_expires_at.is_(None),
                ConnectedAccount.access_token_expires_at <= horizon,
            ),
        )
        .order_by(ConnectedAccount.access_token_expires_at)
        .all()
    )


def list_accounts_by_watch_state(db: Session, states: list[str]) -> list[ConnectedAccount]:
    return (
        db.query(ConnectedAccount)
        .filter(ConnectedAccount.watch_state.in_(states))
        .order_by(ConnectedAccount.created_at)
        .all()
    )


def update_account(
    db: Session,
    account_id: UUID,
    *,
    commit: bool = True,
    **fields: object,
) -> ConnectedAccount | None:
    """Atomically update sync/credential bookkeeping fields on an account."""
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported account fields: {', '.join(sorted(unknown))}")
    account = lock_account(db, account_id)
    if account is None:
        return None
    for key, value in fields.items():
        setattr(account, key, value)
    if commit:
        db.commit()
        db.refresh(account)
    else:
        db.flush()
    return account


# =============================================================================
# Token material
# =============================================================================


def get_access_token(account: ConnectedAccount) -> str | None:
    if not account.access_token_encrypted:
        return None
    return decrypt_token(account.access_token_encrypted)


def get_refresh_token(account: ConnectedAccount) -> str | None:
    if not account.refresh_token_encrypted:
        return None
    return decrypt_token(account.refresh_token_encrypted)


def has_usable_access_token(
    account: ConnectedAccount,
    *,
    now: datetime | None = None,
    leeway_seconds: int = 0,
) -> bool:
    """Present and not expired. A missing expiry is treated as usable."""
    if not account.access_token_encrypted:
        return False
    expires_at = as_utc(account.access_token_expires_at)
    if expires_at is None:
        return True
    current = now or now_utc()
    return expires_at > current + timedelta(seconds=leeway_seconds)


def store_tokens(
    db: Session,
    account_id: UUID,
    *,
    access_token: str,
    expires_at: datetime,
    refresh_token: str | None = None,
    commit: bool = True,
) -> ConnectedAccount | None:
    """
    Persist a refreshed token pair under a row lock.

    Last writer wins; a refresh token is only replaced when Google rotates it.
    """
    account = lock_account(db, account_id)
    if account is None:
        return None
    account.access_token_encrypted = encrypt_token(access_token)
    account.access_token_expires_at = expires_at
    if refresh_token:
        account.refresh_token_encrypted = encrypt_token(refresh_token)
    account.token_last_refreshed_at = now_utc()
    account.token_last_error = None
    if commit:
        db.commit()
        db.refresh(account)
    else:
        db.flush()
    return account


# =============================================================================
# Users and linking
# =============================================================================


def get_user(db: Session, user_id: UUID) -> User | None:
    return db.query(User).filter(User.id == user_id).first()


def get_or_create_user(db: Session, email: str, display_name: str | None = None) -> User:
    normalized = normalize_email(email)
    if not normalized:
        raise ValueError("User email is required")
    user = db.query(User).filter(User.email == normalized).first()
    if user:
        if display_name and not user.display_name:
            user.display_name = display_name
            db.flush()
        return user
    user = User(email=normalized, display_name=display_name)
    db.add(user)
    db.flush()
    return user


def get_account_by_provider_identity(
    db: Session,
    provider_account_id: str,
    provider: Provider = Provider.GOOGLE,
) -> ConnectedAccount | None:
    return (
        db.query(ConnectedAccount)
        .filter(
            ConnectedAccount.provider == provider.value,
            ConnectedAccount.provider_account_id == provider_account_id,
        )
        .first()
    )


def upsert_account(
    db: Session,
    *,
    user: User,
    email: str,
    provider_account_id: str,
    access_token: str,
    refresh_token: str | None,
    expires_at: datetime | None,
    provider: Provider = Provider.GOOGLE,
) -> ConnectedAccount:
    """Create or re-link a connected account and store fresh credentials."""
    normalized = normalize_email(email)
    if not normalized:
        raise ValueError("Account email is required")
    account = get_account_by_provider_identity(db, provider_account_id, provider)
    if account is None:
        is_first = not db.query(ConnectedAccount.id).filter(ConnectedAccount.user_id == user.id).first()
        account = ConnectedAccount(
            user_id=user.id,
            email=normalized,
            provider=provider.value,
            provider_account_id=provider_account_id,
            is_primary=is_first,
        )
        db.add(account)
    account.email = normalized
    account.access_token_encrypted = encrypt_token(access_token)
    account.access_token_expires_at = expires_at
    # Google omits the refresh token on re-consent; keep the stored one.
    if refresh_token:
        account.refresh_token_encrypted = encrypt_token(refresh_token)
    account.token_last_error = None
    db.flush()
    logger.info("Stored credentials for connected account %s", account.id)
    return account
