from __future__ import annotations

from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from idvault.logging import get_logger

ALGORITHM = "argon2id"

logger = get_logger(__name__)


class CredentialHasher:
    """argon2id hashing for account passwords.

    Cost parameters default to the argon2-cffi recommendations; tests pass
    cheaper ones.
    """

    def __init__(self, **argon2_params) -> None:
        self._hasher = PasswordHasher(type=Type.ID, **argon2_params)
        # Used to spend comparable time when the account does not exist
        self._dummy_hash = self._hasher.hash("idvault-timing-equalizer")

    def hash(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), ALGORITHM

    def verify(self, stored_hash: Optional[str], password: str, *, algo: str = ALGORITHM) -> bool:
        if not stored_hash or algo != ALGORITHM:
            logger.warning("password_algo_mismatch", algo=algo)
            self.burn(password)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            logger.warning("password_hash_invalid")
            return False

    def burn(self, password: str) -> None:
        """Run a verification that always fails, for timing parity."""
        try:
            self._hasher.verify(self._dummy_hash, password + "\x00")
        except VerificationError:
            pass

    def needs_rehash(self, stored_hash: str) -> bool:
        return self._hasher.check_needs_rehash(stored_hash)
