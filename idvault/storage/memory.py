from __future__ import annotations

import json
import os
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Set

from idvault.logging import get_logger
from idvault.storage.common import (
    SecretCipher,
    deserialize_record,
    serialize_record,
)
from idvault.storage.errors import ConstraintViolation
from idvault.storage.models import (
    Account,
    MfaChallenge,
    RefreshRecord,
    ResetToken,
    Role,
    Session,
    utcnow,
)


class MemoryStore:
    """In-process credential store persisted to a JSON snapshot.

    Every public method holds the data lock for its whole body, so the
    compare-and-swap style operations (``revoke_*``, ``mark_reset_token_used``,
    ``consume_mfa_challenge``, ``increment_failed_attempts``) are atomic with
    respect to each other. Records handed out are copies; callers persist
    changes through ``save_account`` or the dedicated mutators.
    """

    def __init__(
        self,
        fs_root: str | None = "/tmp/idvault",
        *,
        mfa_encryption_key: str | None = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.roles: Dict[str, Role] = {}
        self.account_roles: Dict[str, Set[str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.refresh_records: Dict[str, RefreshRecord] = {}
        self.reset_tokens: Dict[str, ResetToken] = {}
        self.mfa_challenges: Dict[str, MfaChallenge] = {}
        # RLock so helpers can be called from inside locked sections
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        self._cipher = SecretCipher(
            mfa_encryption_key or os.getenv("MFA_ENCRYPTION_KEY") or os.getenv("JWT_SECRET") or ""
        )
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- accounts -----------------------------------------------------------

    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            self._check_unique(account)
            self.accounts[account.id] = replace(account)
            self.account_roles.setdefault(account.id, set())
            self._persist_state()
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_username(self, username: str) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if account.username == username:
                    return replace(account)
            return None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        needle = email.strip().lower()
        with self._data_lock:
            for account in self.accounts.values():
                if account.email and account.email.lower() == needle:
                    return replace(account)
            return None

    def account_exists(self, username: str, email: Optional[str] = None) -> bool:
        with self._data_lock:
            if self.get_account_by_username(username):
                return True
            return bool(email and self.get_account_by_email(email))

    def list_accounts(self) -> List[Account]:
        with self._data_lock:
            return sorted(
                (replace(a) for a in self.accounts.values()), key=lambda a: a.created_at
            )

    def save_account(self, account: Account) -> Account:
        with self._data_lock:
            if account.id not in self.accounts:
                raise ConstraintViolation("account not found", {"account_id": account.id})
            self._check_unique(account)
            current = self.accounts[account.id]
            # Lockout columns belong to the counter and lock mutators
            stored = replace(
                account,
                failed_attempts=current.failed_attempts,
                locked=current.locked,
                locked_until=current.locked_until,
                updated_at=utcnow(),
            )
            self.accounts[account.id] = stored
            self._persist_state()
            return replace(stored)

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if self.accounts.pop(account_id, None) is None:
                return False
            self.account_roles.pop(account_id, None)
            self.delete_account_ledger(account_id)
            self.reset_tokens = {
                k: v for k, v in self.reset_tokens.items() if v.account_id != account_id
            }
            self.mfa_challenges = {
                k: v for k, v in self.mfa_challenges.items() if v.account_id != account_id
            }
            self._persist_state()
            return True

    def increment_failed_attempts(
        self, account_id: str, *, max_attempts: int, lock_until: datetime
    ) -> Optional[Account]:
        """Bump the failure counter and lock once it reaches ``max_attempts``."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            account.failed_attempts += 1
            if account.failed_attempts >= max_attempts:
                account.locked = True
                account.locked_until = lock_until
            account.updated_at = utcnow()
            self._persist_state()
            return replace(account)

    def reset_failed_attempts(
        self, account_id: str, *, unlock: bool = False, last_login_at: Optional[datetime] = None
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            account.failed_attempts = 0
            if unlock:
                account.locked = False
                account.locked_until = None
            if last_login_at is not None:
                account.last_login_at = last_login_at
            account.updated_at = utcnow()
            self._persist_state()
            return replace(account)

    def lock_account(
        self, account_id: str, *, locked_until: Optional[datetime] = None
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            account.locked = True
            account.locked_until = locked_until
            account.updated_at = utcnow()
            self._persist_state()
            return replace(account)

    def _check_unique(self, candidate: Account) -> None:
        email = candidate.email.lower() if candidate.email else None
        for existing in self.accounts.values():
            if existing.id == candidate.id:
                continue
            if existing.username == candidate.username:
                raise ConstraintViolation("username already exists", {"field": "username"})
            if email and existing.email and existing.email.lower() == email:
                raise ConstraintViolation("email already exists", {"field": "email"})

    # -- roles --------------------------------------------------------------

    def create_role(self, role: Role) -> Role:
        with self._data_lock:
            if any(r.name == role.name for r in self.roles.values()):
                raise ConstraintViolation("role already exists", {"field": "name"})
            self.roles[role.id] = replace(role)
            self._persist_state()
            return replace(role)

    def get_role(self, name: str) -> Optional[Role]:
        with self._data_lock:
            for role in self.roles.values():
                if role.name == name:
                    return replace(role)
            return None

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return sorted((replace(r) for r in self.roles.values()), key=lambda r: r.name)

    def delete_role(self, name: str) -> bool:
        with self._data_lock:
            role = self.get_role(name)
            if role is None:
                return False
            del self.roles[role.id]
            for assigned in self.account_roles.values():
                assigned.discard(role.id)
            self._persist_state()
            return True

    def assign_role(self, account_id: str, role_name: str) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            role = self.get_role(role_name)
            if role is None:
                raise ConstraintViolation("role not found", {"role": role_name})
            self.account_roles.setdefault(account_id, set()).add(role.id)
            self._persist_state()

    def remove_role(self, account_id: str, role_name: str) -> bool:
        with self._data_lock:
            role = self.get_role(role_name)
            linked = self.account_roles.get(account_id, set())
            if role is None or role.id not in linked:
                return False
            linked.discard(role.id)
            self._persist_state()
            return True

    def get_account_roles(self, account_id: str) -> List[str]:
        with self._data_lock:
            return sorted(
                self.roles[role_id].name
                for role_id in self.account_roles.get(account_id, set())
                if role_id in self.roles
            )

    # -- session ledger -----------------------------------------------------

    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if any(s.access_jti == session.access_jti for s in self.sessions.values()):
                raise ConstraintViolation("access jti already recorded", {"field": "access_jti"})
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return replace(session) if session else None

    def get_session_by_access_jti(self, access_jti: str) -> Optional[Session]:
        with self._data_lock:
            for session in self.sessions.values():
                if session.access_jti == access_jti:
                    return replace(session)
            return None

    def list_account_sessions(self, account_id: str) -> List[Session]:
        with self._data_lock:
            return [replace(s) for s in self.sessions.values() if s.account_id == account_id]

    def revoke_session_row(self, session_id: str, revoked_at: datetime) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None or session.revoked:
                return False
            session.revoked = True
            session.revoked_at = revoked_at
            self._persist_state()
            return True

    def insert_refresh_record(self, record: RefreshRecord) -> RefreshRecord:
        with self._data_lock:
            if any(r.refresh_jti == record.refresh_jti for r in self.refresh_records.values()):
                raise ConstraintViolation("refresh jti already recorded", {"field": "refresh_jti"})
            self.refresh_records[record.id] = replace(record)
            self._persist_state()
            return replace(record)

    def get_refresh_by_jti(self, refresh_jti: str) -> Optional[RefreshRecord]:
        with self._data_lock:
            for record in self.refresh_records.values():
                if record.refresh_jti == refresh_jti:
                    return replace(record)
            return None

    def list_session_refresh_records(self, session_id: str) -> List[RefreshRecord]:
        with self._data_lock:
            return [
                replace(r) for r in self.refresh_records.values() if r.session_id == session_id
            ]

    def list_account_refresh_records(self, account_id: str) -> List[RefreshRecord]:
        with self._data_lock:
            return [
                replace(r) for r in self.refresh_records.values() if r.account_id == account_id
            ]

    def revoke_refresh_record(self, record_id: str, revoked_at: datetime) -> bool:
        with self._data_lock:
            record = self.refresh_records.get(record_id)
            if record is None or record.revoked:
                return False
            record.revoked = True
            record.revoked_at = revoked_at
            self._persist_state()
            return True

    def touch_refresh_record(self, record_id: str, used_at: datetime) -> Optional[RefreshRecord]:
        with self._data_lock:
            record = self.refresh_records.get(record_id)
            if record is None:
                return None
            record.last_used_at = used_at
            self._persist_state()
            return replace(record)

    def delete_account_ledger(self, account_id: str) -> int:
        with self._data_lock:
            before = len(self.sessions) + len(self.refresh_records)
            self.sessions = {
                k: v for k, v in self.sessions.items() if v.account_id != account_id
            }
            self.refresh_records = {
                k: v for k, v in self.refresh_records.items() if v.account_id != account_id
            }
            removed = before - len(self.sessions) - len(self.refresh_records)
            if removed:
                self._persist_state()
            return removed

    # -- password reset -----------------------------------------------------

    def insert_reset_token(self, token: ResetToken) -> ResetToken:
        with self._data_lock:
            if token.account_id not in self.accounts:
                raise ConstraintViolation("account not found", {"account_id": token.account_id})
            self.reset_tokens[token.id] = replace(token)
            self._persist_state()
            return replace(token)

    def get_reset_token_by_hash(self, token_hash: str) -> Optional[ResetToken]:
        with self._data_lock:
            for token in self.reset_tokens.values():
                if token.token_hash == token_hash:
                    return replace(token)
            return None

    def count_reset_tokens_since(self, account_id: str, since: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for t in self.reset_tokens.values()
                if t.account_id == account_id and t.created_at >= since
            )

    def mark_reset_token_used(self, token_id: str, used_at: datetime) -> bool:
        with self._data_lock:
            token = self.reset_tokens.get(token_id)
            if token is None or token.used:
                return False
            token.used = True
            token.used_at = used_at
            self._persist_state()
            return True

    def delete_expired_reset_tokens(self, before: datetime) -> int:
        with self._data_lock:
            stale = [k for k, t in self.reset_tokens.items() if t.expires_at <= before]
            for key in stale:
                del self.reset_tokens[key]
            if stale:
                self._persist_state()
            return len(stale)

    # -- mfa login challenges -----------------------------------------------

    def insert_mfa_challenge(self, challenge: MfaChallenge) -> MfaChallenge:
        with self._data_lock:
            self.mfa_challenges[challenge.id] = replace(challenge)
            self._persist_state()
            return replace(challenge)

    def get_mfa_challenge_by_hash(self, handle_hash: str) -> Optional[MfaChallenge]:
        with self._data_lock:
            for challenge in self.mfa_challenges.values():
                if challenge.handle_hash == handle_hash:
                    return replace(challenge)
            return None

    def increment_mfa_challenge_attempts(self, challenge_id: str) -> int:
        with self._data_lock:
            challenge = self.mfa_challenges.get(challenge_id)
            if challenge is None:
                return 0
            challenge.attempts += 1
            self._persist_state()
            return challenge.attempts

    def consume_mfa_challenge(self, challenge_id: str, consumed_at: datetime) -> bool:
        with self._data_lock:
            challenge = self.mfa_challenges.get(challenge_id)
            if challenge is None or challenge.consumed:
                return False
            challenge.consumed = True
            challenge.consumed_at = consumed_at
            self._persist_state()
            return True

    def delete_stale_mfa_challenges(self, before: datetime) -> int:
        """Drop consumed challenges and those that expired by ``before``."""
        with self._data_lock:
            stale = [
                k
                for k, c in self.mfa_challenges.items()
                if c.consumed or c.expires_at <= before
            ]
            for key in stale:
                del self.mfa_challenges[key]
            if stale:
                self._persist_state()
            return len(stale)

    # -- persistence --------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    def _serialize_account(self, account: Account) -> dict:
        data = serialize_record(account)
        data["mfa_secret"] = self._cipher.encrypt(account.mfa_secret)
        return data

    def _deserialize_account(self, data: dict) -> Account:
        account = deserialize_record(Account, data)
        account.mfa_secret = self._cipher.decrypt(account.mfa_secret)
        return account

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "roles": [serialize_record(r) for r in self.roles.values()],
            "account_roles": {k: sorted(v) for k, v in self.account_roles.items()},
            "sessions": [serialize_record(s) for s in self.sessions.values()],
            "refresh_records": [serialize_record(r) for r in self.refresh_records.values()],
            "reset_tokens": [serialize_record(t) for t in self.reset_tokens.values()],
            "mfa_challenges": [serialize_record(c) for c in self.mfa_challenges.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        os.replace(tmp_path, path)

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.roles = {r["id"]: deserialize_record(Role, r) for r in data.get("roles", [])}
        self.account_roles = {k: set(v) for k, v in data.get("account_roles", {}).items()}
        self.sessions = {
            s["id"]: deserialize_record(Session, s) for s in data.get("sessions", [])
        }
        self.refresh_records = {
            r["id"]: deserialize_record(RefreshRecord, r)
            for r in data.get("refresh_records", [])
        }
        self.reset_tokens = {
            t["id"]: deserialize_record(ResetToken, t) for t in data.get("reset_tokens", [])
        }
        self.mfa_challenges = {
            c["id"]: deserialize_record(MfaChallenge, c)
            for c in data.get("mfa_challenges", [])
        }
        self.logger.info("memory_store_loaded", accounts=len(self.accounts), path=str(path))
        return True
