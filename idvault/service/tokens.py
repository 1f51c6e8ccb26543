"""HS256 token codec.

Tokens are compact JWS strings signed with HMAC-SHA256. The codec only knows
about signatures, issuer, type and expiry; whether a token is still *live*
is decided by the session ledger.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from idvault.logging import get_logger
from idvault.storage.models import utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

# Claims the codec owns; callers cannot override them through ``claims``
RESERVED_CLAIMS = frozenset({"sub", "jti", "type", "iat", "exp", "iss"})


class TokenError(Exception):
    """Base class for codec failures; never leaves the service layer."""


class MalformedToken(TokenError):
    pass


class InvalidSignature(TokenError):
    pass


class ExpiredToken(TokenError):
    pass


@dataclass(frozen=True)
class IssuedToken:
    token: str
    jti: str
    issued_at: datetime
    expires_at: datetime


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _json_segment(value: dict[str, Any]) -> str:
    return _encode_segment(json.dumps(value, separators=(",", ":"), sort_keys=True).encode())


class TokenCodec:
    """Issue and verify HS256 tokens for one issuer.

    ``secret`` signs new tokens. ``verification_secrets`` lists retired keys
    that are still accepted when parsing, so a signing key can be rotated
    without invalidating outstanding tokens.
    """

    def __init__(
        self,
        secret: str,
        issuer: str,
        *,
        verification_secrets: Iterable[str] = (),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        self._signing_key = secret.encode("utf-8")
        self._verification_keys = (self._signing_key,) + tuple(
            s.encode("utf-8") for s in verification_secrets if s
        )
        self.issuer = issuer
        self._clock = clock or utcnow

    def issue(
        self,
        subject: str,
        token_type: str,
        ttl: timedelta,
        claims: Optional[dict[str, Any]] = None,
    ) -> IssuedToken:
        if token_type not in (ACCESS, REFRESH):
            raise ValueError(f"unknown token type: {token_type}")
        now = self._clock()
        expires_at = now + ttl
        jti = str(uuid.uuid4())
        payload = {
            k: v for k, v in (claims or {}).items() if k not in RESERVED_CLAIMS
        }
        payload.update(
            {
                "sub": subject,
                "jti": jti,
                "type": token_type,
                "iat": int(now.timestamp()),
                "exp": int(expires_at.timestamp()),
                "iss": self.issuer,
            }
        )
        signing_input = f"{_json_segment({'alg': 'HS256', 'typ': 'JWT'})}.{_json_segment(payload)}"
        token = f"{signing_input}.{self._sign(self._signing_key, signing_input)}"
        return IssuedToken(token=token, jti=jti, issued_at=now, expires_at=expires_at)

    def parse(self, token: str, *, expected_type: Optional[str] = None) -> dict[str, Any]:
        """Return the claims of a correctly signed, unexpired token.

        Raises ``MalformedToken``, ``InvalidSignature`` or ``ExpiredToken``.
        The signature is checked before any claim is trusted.
        """
        if not isinstance(token, str):
            raise MalformedToken("token must be a string")
        if not token.isascii():
            raise MalformedToken("token must be ascii")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise MalformedToken("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts
        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, ValueError) as exc:
            raise MalformedToken("undecodable header") from exc
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("token_invalid_algorithm")
            raise MalformedToken("unsupported algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        if not any(
            hmac.compare_digest(self._sign(key, signing_input), sig_b64)
            for key in self._verification_keys
        ):
            raise InvalidSignature("signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, ValueError) as exc:
            raise MalformedToken("undecodable payload") from exc
        if not isinstance(payload, dict):
            raise MalformedToken("payload must be an object")
        if payload.get("iss") != self.issuer:
            raise MalformedToken("issuer mismatch")
        if not payload.get("sub") or not payload.get("jti"):
            raise MalformedToken("missing subject or id")
        if expected_type is not None and payload.get("type") != expected_type:
            raise MalformedToken("unexpected token type")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedToken("missing expiry") from exc
        if exp_ts <= self._clock().timestamp():
            raise ExpiredToken("token expired")
        return payload

    def extract_id(self, token: str) -> Optional[str]:
        """jti of a valid token, or None when the token does not parse."""
        try:
            return self.parse(token)["jti"]
        except TokenError:
            return None

    @staticmethod
    def _sign(key: bytes, signing_input: str) -> str:
        return _encode_segment(hmac.new(key, signing_input.encode(), hashlib.sha256).digest())
