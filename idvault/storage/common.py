"""Helpers shared by the memory and postgres stores."""

from __future__ import annotations

import base64
import dataclasses
import hashlib
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Type, TypeVar

from cryptography.fernet import Fernet, InvalidToken

from idvault.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Field-name suffixes that hold timestamps in every stored record
_DATETIME_SUFFIXES = ("_at", "_until")


def hash_token(raw: str) -> str:
    """SHA-256 hex digest used wherever a bearer secret is looked up."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes coming back from storage as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SecretCipher:
    """Fernet wrapper for MFA secrets at rest.

    The Fernet key is derived from arbitrary key material with SHA-256 so any
    configured string (for example the JWT signing secret) can be used.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("MFA encryption key material is required")
        derived = base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())
        self._fernet = Fernet(derived)

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, stored: Optional[str]) -> Optional[str]:
        if not stored:
            return stored
        try:
            return self._fernet.decrypt(stored.encode()).decode()
        except InvalidToken:
            # Rows written before encryption was enabled hold the plain secret
            logger.warning("mfa_secret_decrypt_failed")
            return stored


def serialize_record(record: Any) -> Dict[str, Any]:
    data = dataclasses.asdict(record)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
    return data


def deserialize_record(cls: Type[T], data: Dict[str, Any]) -> T:
    known = {f.name for f in dataclasses.fields(cls)}
    values: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in known:
            continue
        if isinstance(value, str) and key.endswith(_DATETIME_SUFFIXES):
            value = ensure_utc(datetime.fromisoformat(value))
        values[key] = value
    return cls(**values)
