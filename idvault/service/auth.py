from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Literal, Optional, Protocol

from idvault.logging import fingerprint, get_logger
from idvault.service.errors import (
    AccountDisabled,
    AccountLocked,
    InvalidAccessToken,
    InvalidCredentials,
    InvalidMfaChallenge,
    InvalidMfaCode,
    InvalidRefreshToken,
    TokenNotFound,
)
from idvault.service.ledger import SessionLedger
from idvault.service.password import find_account
from idvault.service.tokens import ACCESS, REFRESH, TokenCodec, TokenError
from idvault.storage.common import hash_token
from idvault.storage.models import Account, MfaChallenge, Session, new_id, utcnow

if TYPE_CHECKING:
    from idvault.config import Settings
    from idvault.service.credentials import CredentialHasher
    from idvault.service.mfa import MfaService

logger = get_logger(__name__)


class AuthStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_username(self, username: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def save_account(self, account: Account) -> Account: ...

    def increment_failed_attempts(
        self, account_id: str, *, max_attempts: int, lock_until: datetime
    ) -> Optional[Account]: ...

    def reset_failed_attempts(
        self, account_id: str, *, unlock: bool = False, last_login_at: Optional[datetime] = None
    ) -> Optional[Account]: ...

    def get_account_roles(self, account_id: str) -> List[str]: ...

    def insert_mfa_challenge(self, challenge: MfaChallenge) -> MfaChallenge: ...

    def get_mfa_challenge_by_hash(self, handle_hash: str) -> Optional[MfaChallenge]: ...

    def increment_mfa_challenge_attempts(self, challenge_id: str) -> int: ...

    def consume_mfa_challenge(self, challenge_id: str, consumed_at: datetime) -> bool: ...

    def delete_stale_mfa_challenges(self, before: datetime) -> int: ...


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


@dataclass(frozen=True)
class MfaChallengeTicket:
    """Handle for the second login step; only its digest is stored."""

    challenge_id: str
    expires_at: datetime


@dataclass(frozen=True)
class LoginResult:
    status: Literal["authenticated", "mfa_required"]
    tokens: Optional[TokenPair] = None
    challenge: Optional[MfaChallengeTicket] = None

    @property
    def mfa_required(self) -> bool:
        return self.status == "mfa_required"


@dataclass
class AuthContext:
    account_id: str
    username: Optional[str]
    session_id: Optional[str]
    roles: List[str] = field(default_factory=list)
    claims: Dict[str, Any] = field(default_factory=dict)


class AuthService:
    """Login, rotation, logout and token validation.

    All state lives in the store; every check re-reads it, so a revocation
    or lock is visible to the very next call.
    """

    def __init__(
        self,
        store: AuthStore,
        codec: TokenCodec,
        ledger: SessionLedger,
        hasher: "CredentialHasher",
        settings: "Settings",
        *,
        mfa: Optional["MfaService"] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.ledger = ledger
        self.hasher = hasher
        self.settings = settings
        self.mfa = mfa
        self._clock = clock or utcnow
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(seconds=self.settings.access_token_ttl_seconds)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(seconds=self.settings.refresh_token_ttl_seconds)

    # -- account state ------------------------------------------------------

    def _check_account_usable(self, account: Account) -> Account:
        """Raise for disabled or locked accounts; clear a lock whose time is up."""
        if not account.enabled:
            self.logger.warning("login_blocked_disabled", account_id=account.id)
            raise AccountDisabled()
        if account.locked:
            if account.locked_until is None or account.locked_until > self._now():
                self.logger.warning(
                    "login_blocked_locked",
                    account_id=account.id,
                    locked_until=account.locked_until.isoformat() if account.locked_until else None,
                )
                raise AccountLocked()
            refreshed = self.store.reset_failed_attempts(account.id, unlock=True)
            self.logger.info("account_lock_expired", account_id=account.id)
            account = refreshed or account
        return account

    def _record_failure(self, account: Account) -> None:
        lock_until = self._now() + timedelta(minutes=self.settings.lockout_duration_minutes)
        updated = self.store.increment_failed_attempts(
            account.id,
            max_attempts=self.settings.lockout_max_attempts,
            lock_until=lock_until,
        )
        attempts = updated.failed_attempts if updated else None
        self.logger.warning("login_failed", account_id=account.id, attempts=attempts)
        if updated and updated.locked and not account.locked:
            self.logger.warning(
                "account_locked",
                account_id=account.id,
                locked_until=lock_until.isoformat(),
            )

    def _mfa_required(self, account: Account) -> bool:
        return bool(
            self.settings.enable_mfa
            and self.mfa is not None
            and account.mfa_enabled
            and account.mfa_secret
        )

    # -- login --------------------------------------------------------------

    async def login(self, identifier: str, password: str) -> LoginResult:
        account = find_account(self.store, identifier)
        if account is None:
            self.hasher.burn(password or "")
            self.logger.warning("login_unknown_account", ref=fingerprint(identifier or ""))
            raise InvalidCredentials()

        account = self._check_account_usable(account)

        if not self.hasher.verify(account.password_hash, password or "", algo=account.password_algo):
            self._record_failure(account)
            raise InvalidCredentials()

        if self.hasher.needs_rehash(account.password_hash):
            account.password_hash, account.password_algo = self.hasher.hash(password)
            self.store.save_account(account)

        if self._mfa_required(account):
            self.store.reset_failed_attempts(account.id)
            ticket = self._open_mfa_challenge(account)
            self.logger.info("login_mfa_challenge", account_id=account.id)
            return LoginResult(status="mfa_required", challenge=ticket)

        self.store.reset_failed_attempts(account.id, last_login_at=self._now())
        tokens = self._issue_tokens(account)
        self.logger.info("login_succeeded", account_id=account.id)
        return LoginResult(status="authenticated", tokens=tokens)

    def _open_mfa_challenge(self, account: Account) -> MfaChallengeTicket:
        now = self._now()
        handle = secrets.token_urlsafe(32)
        challenge = MfaChallenge(
            id=new_id(),
            account_id=account.id,
            handle_hash=hash_token(handle),
            created_at=now,
            expires_at=now + timedelta(seconds=self.settings.mfa_challenge_ttl_seconds),
        )
        self.store.insert_mfa_challenge(challenge)
        return MfaChallengeTicket(challenge_id=handle, expires_at=challenge.expires_at)

    async def complete_mfa_login(self, challenge_id: str, code: str) -> LoginResult:
        challenge = self.store.get_mfa_challenge_by_hash(hash_token(challenge_id or ""))
        now = self._now()
        if challenge is None or challenge.consumed or challenge.expires_at <= now:
            raise InvalidMfaChallenge()

        account = self.store.get_account(challenge.account_id)
        if account is None:
            raise InvalidCredentials()
        account = self._check_account_usable(account)
        if self.mfa is None:
            raise InvalidMfaChallenge()

        if not self.mfa.check_code(account, code):
            attempts = self.store.increment_mfa_challenge_attempts(challenge.id)
            if attempts >= self.settings.mfa_max_attempts:
                self.store.consume_mfa_challenge(challenge.id, now)
                self.logger.warning("mfa_challenge_exhausted", account_id=account.id)
            raise InvalidMfaCode()

        if not self.store.consume_mfa_challenge(challenge.id, now):
            raise InvalidMfaChallenge()
        self.store.reset_failed_attempts(account.id, last_login_at=now)
        tokens = self._issue_tokens(account)
        self.logger.info("login_succeeded", account_id=account.id, mfa=True)
        return LoginResult(status="authenticated", tokens=tokens)

    async def purge_mfa_challenges(self) -> int:
        """Delete consumed and expired login challenges."""
        purged = self.store.delete_stale_mfa_challenges(self._now())
        if purged:
            self.logger.info("mfa_challenges_purged", count=purged)
        return purged

    # -- issuance and rotation ----------------------------------------------

    def _issue_tokens(self, account: Account) -> TokenPair:
        roles = self.store.get_account_roles(account.id)
        # The session id is fixed before minting so the access token can carry it
        session_id = new_id()
        access = self.codec.issue(
            account.id,
            ACCESS,
            self.access_ttl,
            {"roles": roles, "username": account.username, "sid": session_id},
        )
        self.ledger.record_session(account.id, access.jti, self.access_ttl, session_id=session_id)
        refresh = self.codec.issue(account.id, REFRESH, self.refresh_ttl, {"sid": session_id})
        self.ledger.record_refresh(
            account.id, refresh.jti, hash_token(refresh.token), session_id, self.refresh_ttl
        )
        return TokenPair(
            access_token=access.token,
            refresh_token=refresh.token,
            expires_in=self.settings.access_token_ttl_seconds,
        )

    async def refresh(self, refresh_token: str) -> TokenPair:
        try:
            claims = self.codec.parse(refresh_token, expected_type=REFRESH)
        except TokenError as exc:
            self.logger.warning("refresh_rejected", reason=type(exc).__name__)
            raise InvalidRefreshToken() from exc

        record = self.ledger.find_refresh_by_jti(claims["jti"])
        reason = None
        if record is None:
            reason = "not_found"
        elif record.revoked:
            reason = "revoked"
        elif not self.ledger.is_live(record):
            reason = "expired"
        elif not secrets.compare_digest(record.token_hash, hash_token(refresh_token)):
            reason = "hash_mismatch"
        if reason is not None:
            self.logger.warning("refresh_rejected", reason=reason, jti=claims["jti"])
            raise InvalidRefreshToken()

        account = self.store.get_account(record.account_id)
        if account is None:
            self.logger.warning("refresh_rejected", reason="account_missing")
            raise InvalidRefreshToken()
        account = self._check_account_usable(account)

        self.ledger.touch_refresh(record)
        if self.settings.strict_refresh_rotation and not self.ledger.revoke(record):
            self.logger.warning("refresh_rejected", reason="concurrent_use", jti=record.refresh_jti)
            raise InvalidRefreshToken()
        tokens = self._issue_tokens(account)
        self.logger.info("refresh_rotated", account_id=account.id)
        return tokens

    # -- revocation ---------------------------------------------------------

    async def logout(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        access_jti = self.codec.extract_id(access_token)
        if access_jti is None:
            raise InvalidAccessToken()
        session = self.ledger.find_session_by_access_jti(access_jti)
        revoked = 0
        if session is not None:
            revoked += self.ledger.revoke_session_cascade(session)
        if refresh_token:
            refresh_jti = self.codec.extract_id(refresh_token)
            record = self.ledger.find_refresh_by_jti(refresh_jti) if refresh_jti else None
            if record is not None:
                revoked += int(self.ledger.revoke(record))
        self.logger.info(
            "logout",
            account_id=session.account_id if session else None,
            rows_revoked=revoked,
        )

    async def revoke_refresh_token(self, refresh_token: str) -> None:
        refresh_jti = self.codec.extract_id(refresh_token)
        if refresh_jti is None:
            raise InvalidRefreshToken()
        record = self.ledger.find_refresh_by_jti(refresh_jti)
        if record is None:
            raise TokenNotFound("refresh token not found")
        if self.ledger.revoke(record):
            self.logger.info("refresh_revoked", account_id=record.account_id)

    async def revoke_session(self, session_id: str) -> bool:
        session = self.ledger.find_session(session_id)
        if session is None:
            return False
        self.ledger.revoke_session_cascade(session)
        self.logger.info("session_revoked", account_id=session.account_id, session_id=session_id)
        return True

    async def revoke_all_sessions(self, account_id: str) -> int:
        return self.ledger.revoke_all(account_id)

    async def list_sessions(self, account_id: str) -> List[Session]:
        return self.ledger.list_active_sessions(account_id)

    # -- validation ---------------------------------------------------------

    def _live_claims(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            claims = self.codec.parse(token, expected_type=ACCESS)
        except TokenError:
            return None
        session = self.ledger.find_session_by_access_jti(claims["jti"])
        if not self.ledger.is_live(session):
            return None
        return claims

    async def validate_access_token(self, token: str) -> bool:
        return self._live_claims(token) is not None

    async def authenticate(self, token: str) -> Optional[AuthContext]:
        claims = self._live_claims(token)
        if claims is None:
            return None
        return AuthContext(
            account_id=claims["sub"],
            username=claims.get("username"),
            session_id=claims.get("sid"),
            roles=list(claims.get("roles") or []),
            claims=claims,
        )

    async def introspect(self, token: str) -> Dict[str, Any]:
        claims = self._live_claims(token)
        if claims is None:
            return {"active": False}
        return {
            "active": True,
            "sub": claims["sub"],
            "username": claims.get("username"),
            "scope": " ".join(claims.get("roles") or []),
            "exp": claims["exp"],
            "iat": claims["iat"],
            "jti": claims["jti"],
            "token_type": ACCESS,
        }

    async def user_info(self, token: str) -> Optional[Dict[str, Any]]:
        """Profile claims for the holder of a live access token."""
        claims = self._live_claims(token)
        if claims is None:
            return None
        account = self.store.get_account(claims["sub"])
        if account is None:
            return None
        name = (
            f"{account.first_name} {account.last_name}"
            if account.first_name and account.last_name
            else account.username
        )
        return {
            "sub": account.id,
            "preferred_username": account.username,
            "email": account.email,
            "given_name": account.first_name,
            "family_name": account.last_name,
            "name": name,
            "roles": self.store.get_account_roles(account.id),
        }
