from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Account:
    id: str
    username: str
    password_hash: str
    email: Optional[str] = None
    password_algo: str = "argon2id"
    enabled: bool = True
    locked: bool = False
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def display_label(self) -> str:
        """Label shown in authenticator apps."""
        return self.email or self.username


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    """Ledger row for one issued access token."""

    id: str
    account_id: str
    access_jti: str
    created_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        access_jti: str,
        ttl: timedelta,
        *,
        now: datetime,
        session_id: Optional[str] = None,
    ) -> "Session":
        return cls(
            id=session_id or new_id(),
            account_id=account_id,
            access_jti=access_jti,
            created_at=now,
            expires_at=now + ttl,
        )


@dataclass
class RefreshRecord:
    """Ledger row for one issued refresh token; only the token digest is kept."""

    id: str
    account_id: str
    refresh_jti: str
    token_hash: str
    created_at: datetime
    expires_at: datetime
    session_id: Optional[str] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        refresh_jti: str,
        token_hash: str,
        ttl: timedelta,
        *,
        now: datetime,
        session_id: Optional[str] = None,
    ) -> "RefreshRecord":
        return cls(
            id=new_id(),
            account_id=account_id,
            refresh_jti=refresh_jti,
            token_hash=token_hash,
            session_id=session_id,
            created_at=now,
            expires_at=now + ttl,
        )


@dataclass
class ResetToken:
    id: str
    account_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None


@dataclass
class MfaChallenge:
    """Pending second-factor step of a login; the raw handle is never stored."""

    id: str
    account_id: str
    handle_hash: str
    created_at: datetime
    expires_at: datetime
    attempts: int = 0
    consumed: bool = False
    consumed_at: Optional[datetime] = None
