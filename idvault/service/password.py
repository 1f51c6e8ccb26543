from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Callable, List, Optional, Protocol

from idvault.logging import fingerprint, get_logger
from idvault.service.errors import (
    PasswordPolicyViolation,
    RateLimited,
    TokenAlreadyUsed,
    TokenExpired,
    TokenNotFound,
)
from idvault.storage.common import hash_token
from idvault.storage.models import Account, ResetToken, new_id, utcnow

if TYPE_CHECKING:
    from idvault.config import Settings
    from idvault.service.credentials import CredentialHasher
    from idvault.service.ledger import SessionLedger

SPECIAL_CHARACTERS = frozenset("!@#$%^&*()-_=+[]{}|;:',.<>?/`~")


class PolicyRule(str, Enum):
    REQUIRED = "required"
    MIN_LENGTH = "min_length"
    MAX_LENGTH = "max_length"
    UPPERCASE = "uppercase"
    LOWERCASE = "lowercase"
    DIGIT = "digit"
    SPECIAL = "special"


@dataclass(frozen=True)
class PolicyViolation:
    rule: PolicyRule
    message: str


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 8
    max_length: int = 128
    require_upper: bool = True
    require_lower: bool = True
    require_digit: bool = True
    require_special: bool = False


def validate_password(password: Optional[str], policy: PasswordPolicy) -> List[PolicyViolation]:
    """Every rule ``password`` breaks, in a fixed order; empty when it is acceptable."""
    if not password:
        return [PolicyViolation(PolicyRule.REQUIRED, "Password is required")]
    violations: List[PolicyViolation] = []
    if len(password) < policy.min_length:
        violations.append(
            PolicyViolation(
                PolicyRule.MIN_LENGTH,
                f"Password must be at least {policy.min_length} characters long",
            )
        )
    if policy.max_length > 0 and len(password) > policy.max_length:
        violations.append(
            PolicyViolation(
                PolicyRule.MAX_LENGTH,
                f"Password must not exceed {policy.max_length} characters",
            )
        )
    if policy.require_upper and not any(c.isupper() for c in password):
        violations.append(
            PolicyViolation(PolicyRule.UPPERCASE, "Password must contain at least one uppercase letter")
        )
    if policy.require_lower and not any(c.islower() for c in password):
        violations.append(
            PolicyViolation(PolicyRule.LOWERCASE, "Password must contain at least one lowercase letter")
        )
    if policy.require_digit and not any(c.isdigit() for c in password):
        violations.append(
            PolicyViolation(PolicyRule.DIGIT, "Password must contain at least one digit")
        )
    if policy.require_special and not any(c in SPECIAL_CHARACTERS for c in password):
        violations.append(
            PolicyViolation(PolicyRule.SPECIAL, "Password must contain at least one special character")
        )
    return violations


def enforce_password_policy(password: Optional[str], policy: PasswordPolicy) -> None:
    violations = validate_password(password, policy)
    if violations:
        raise PasswordPolicyViolation(violations)


class ResetStore(Protocol):
    def get_account_by_username(self, username: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def save_account(self, account: Account) -> Account: ...

    def reset_failed_attempts(
        self, account_id: str, *, unlock: bool = False, last_login_at: Optional[datetime] = None
    ) -> Optional[Account]: ...

    def insert_reset_token(self, token: ResetToken) -> ResetToken: ...

    def get_reset_token_by_hash(self, token_hash: str) -> Optional[ResetToken]: ...

    def count_reset_tokens_since(self, account_id: str, since: datetime) -> int: ...

    def mark_reset_token_used(self, token_id: str, used_at: datetime) -> bool: ...

    def delete_expired_reset_tokens(self, before: datetime) -> int: ...


class ResetNotifier(Protocol):
    def send_password_reset(self, to_email: str, token: str) -> bool: ...


def find_account(store, identifier: str) -> Optional[Account]:
    """Resolve a login identifier as a username first, then as an email."""
    if not identifier:
        return None
    account = store.get_account_by_username(identifier)
    if account is None:
        account = store.get_account_by_email(identifier)
    return account


class PasswordResetService:
    """Rate-limited, single-use password reset tokens.

    Only the SHA-256 of a reset token is stored. The raw value goes to the
    notifier and nowhere else.
    """

    def __init__(
        self,
        store: ResetStore,
        hasher: "CredentialHasher",
        settings: "Settings",
        *,
        ledger: Optional["SessionLedger"] = None,
        notifier: Optional[ResetNotifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.settings = settings
        self.ledger = ledger
        self.notifier = notifier
        self._now = clock or utcnow
        self.logger = get_logger(__name__)

    async def initiate_reset(self, identifier: str) -> None:
        account = find_account(self.store, identifier)
        if account is None:
            # Same outcome as a known account so usernames cannot be enumerated
            self.logger.info("password_reset_unknown_identifier", ref=fingerprint(identifier or ""))
            return
        now = self._now()
        window_start = now - timedelta(minutes=self.settings.reset_window_minutes)
        recent = self.store.count_reset_tokens_since(account.id, window_start)
        if recent >= self.settings.reset_max_requests:
            self.logger.warning("password_reset_rate_limited", account_id=account.id, recent=recent)
            raise RateLimited("too many password reset requests")

        raw_token = secrets.token_urlsafe(32)
        self.store.insert_reset_token(
            ResetToken(
                id=new_id(),
                account_id=account.id,
                token_hash=hash_token(raw_token),
                created_at=now,
                expires_at=now + timedelta(minutes=self.settings.reset_token_ttl_minutes),
            )
        )
        self.logger.info("password_reset_requested", account_id=account.id)
        if not account.email:
            self.logger.warning("password_reset_no_delivery_address", account_id=account.id)
            return
        if self.notifier is None:
            self.logger.warning("password_reset_notifier_missing", account_id=account.id)
            return
        if not self.notifier.send_password_reset(account.email, raw_token):
            self.logger.error("password_reset_delivery_failed", account_id=account.id)

    async def complete_reset(self, raw_token: str, new_password: str) -> None:
        record = self.store.get_reset_token_by_hash(hash_token(raw_token or ""))
        if record is None:
            raise TokenNotFound("invalid reset token")
        if record.used:
            raise TokenAlreadyUsed("reset token has already been used")
        now = self._now()
        if record.expires_at <= now:
            raise TokenExpired("reset token has expired")
        # Policy first so a rejected password leaves the token usable
        enforce_password_policy(new_password, self.settings.password_policy)
        if not self.store.mark_reset_token_used(record.id, now):
            raise TokenAlreadyUsed("reset token has already been used")

        account = self.store.get_account(record.account_id)
        if account is None:
            raise TokenNotFound("invalid reset token")
        account.password_hash, account.password_algo = self.hasher.hash(new_password)
        self.store.save_account(account)
        # Lockout from failed logins ends; administrative locks stay
        self.store.reset_failed_attempts(account.id, unlock=account.locked_until is not None)
        revoked = 0
        if self.ledger is not None and self.settings.revoke_sessions_on_password_change:
            revoked = self.ledger.revoke_all(account.id)
        self.logger.info("password_reset_completed", account_id=account.id, sessions_revoked=revoked)

    async def purge_expired(self) -> int:
        return self.store.delete_expired_reset_tokens(self._now())
