from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Optional, Protocol
from urllib.parse import quote, urlencode

from idvault.logging import get_logger
from idvault.service.errors import AccountNotFound, MfaNotEnabled, MfaUnavailable
from idvault.service.password import find_account
from idvault.storage.models import Account, utcnow

if TYPE_CHECKING:
    from idvault.config import Settings

TOTP_DIGITS = 6
TOTP_PERIOD = 30
TOTP_ALGORITHM = "SHA1"
SECRET_BYTES = 20


class MfaStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_username(self, username: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def save_account(self, account: Account) -> Account: ...


@dataclass(frozen=True)
class MfaEnrollment:
    secret: str
    provisioning_uri: str


def generate_secret() -> str:
    return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")


def generate_totp(secret: str, timestamp: float, *, period: int = TOTP_PERIOD, digits: int = TOTP_DIGITS) -> str:
    """RFC 6238 code for ``timestamp``; empty string for an undecodable secret."""
    normalized = secret.replace(" ", "").upper()
    padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        return ""
    counter = int(timestamp // period).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


def verify_totp(secret: str, code: str, at: datetime, *, window: int = 1, period: int = TOTP_PERIOD) -> bool:
    if not code or not (code.isascii() and code.isdigit()) or len(code) != TOTP_DIGITS:
        return False
    now_ts = at.timestamp()
    matched = False
    # Check every step without short-circuiting
    for offset in range(-window, window + 1):
        expected = generate_totp(secret, now_ts + offset * period, period=period)
        if expected and hmac.compare_digest(expected, code):
            matched = True
    return matched


def provisioning_uri(secret: str, label: str, issuer: str) -> str:
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": TOTP_ALGORITHM,
            "digits": TOTP_DIGITS,
            "period": TOTP_PERIOD,
        },
        quote_via=quote,
    )
    return f"otpauth://totp/{quote(issuer)}:{quote(label)}?{query}"


class MfaService:
    """TOTP enrollment and verification."""

    def __init__(
        self,
        store: MfaStore,
        settings: "Settings",
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._now = clock or utcnow
        self.logger = get_logger(__name__)

    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise AccountNotFound()
        return account

    async def enroll(self, account_id: str) -> MfaEnrollment:
        if not self.settings.enable_mfa:
            raise MfaUnavailable()
        account = self._require_account(account_id)
        secret = generate_secret()
        account.mfa_secret = secret
        account.mfa_enabled = True
        self.store.save_account(account)
        self.logger.info("mfa_enrolled", account_id=account.id)
        return MfaEnrollment(
            secret=secret,
            provisioning_uri=provisioning_uri(
                secret, account.display_label, self.settings.issuer_label
            ),
        )

    def check_code(self, account: Account, code: str) -> bool:
        if not account.mfa_enabled or not account.mfa_secret:
            raise MfaNotEnabled()
        ok = verify_totp(
            account.mfa_secret, (code or "").strip(), self._now(), window=self.settings.totp_window
        )
        if not ok:
            self.logger.warning("mfa_code_rejected", account_id=account.id)
        return ok

    async def verify(self, account_id: str, code: str) -> bool:
        return self.check_code(self._require_account(account_id), code)

    async def verify_by_identifier(self, identifier: str, code: str) -> bool:
        account = find_account(self.store, identifier)
        if account is None:
            raise AccountNotFound()
        return self.check_code(account, code)

    async def disable(self, account_id: str) -> None:
        account = self._require_account(account_id)
        account.mfa_secret = None
        account.mfa_enabled = False
        self.store.save_account(account)
        self.logger.info("mfa_disabled", account_id=account.id)

    async def is_enabled(self, identifier: str) -> bool:
        account = find_account(self.store, identifier)
        return bool(account and account.mfa_enabled and account.mfa_secret)
