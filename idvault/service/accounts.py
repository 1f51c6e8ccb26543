from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional, Protocol

from idvault.logging import get_logger
from idvault.service.errors import (
    AccountExists,
    AccountNotFound,
    ConflictError,
    InvalidCredentials,
    RoleNotFound,
    ValidationError,
)
from idvault.service.password import enforce_password_policy, find_account
from idvault.storage.errors import ConstraintViolation
from idvault.storage.models import Account, Role, new_id, utcnow

if TYPE_CHECKING:
    from idvault.config import Settings
    from idvault.service.credentials import CredentialHasher
    from idvault.service.ledger import SessionLedger


class AccountStore(Protocol):
    def create_account(self, account: Account) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_username(self, username: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def account_exists(self, username: str, email: Optional[str] = None) -> bool: ...

    def list_accounts(self) -> List[Account]: ...

    def save_account(self, account: Account) -> Account: ...

    def delete_account(self, account_id: str) -> bool: ...

    def reset_failed_attempts(
        self, account_id: str, *, unlock: bool = False, last_login_at: Optional[datetime] = None
    ) -> Optional[Account]: ...

    def lock_account(
        self, account_id: str, *, locked_until: Optional[datetime] = None
    ) -> Optional[Account]: ...

    def create_role(self, role: Role) -> Role: ...

    def get_role(self, name: str) -> Optional[Role]: ...

    def list_roles(self) -> List[Role]: ...

    def delete_role(self, name: str) -> bool: ...

    def assign_role(self, account_id: str, role_name: str) -> None: ...

    def remove_role(self, account_id: str, role_name: str) -> bool: ...

    def get_account_roles(self, account_id: str) -> List[str]: ...


def _normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    cleaned = email.strip().lower()
    return cleaned or None


class AccountService:
    """Administrative account and role management."""

    def __init__(
        self,
        store: AccountStore,
        hasher: "CredentialHasher",
        settings: "Settings",
        *,
        ledger: Optional["SessionLedger"] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.settings = settings
        self.ledger = ledger
        self._now = clock or utcnow
        self.logger = get_logger(__name__)

    def _require(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise AccountNotFound()
        return account

    async def create_account(
        self,
        username: str,
        password: str,
        *,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        roles: Iterable[str] = (),
    ) -> Account:
        username = (username or "").strip()
        if not username:
            raise ValidationError("username is required")
        email = _normalize_email(email)
        if self.store.account_exists(username, email):
            raise AccountExists()
        enforce_password_policy(password, self.settings.password_policy)
        role_names = list(roles)
        for name in role_names:
            if self.store.get_role(name) is None:
                raise RoleNotFound(f"role not found: {name}")

        password_hash, algo = self.hasher.hash(password)
        now = self._now()
        account = Account(
            id=new_id(),
            username=username,
            email=email,
            password_hash=password_hash,
            password_algo=algo,
            first_name=first_name,
            last_name=last_name,
            created_at=now,
            updated_at=now,
        )
        try:
            account = self.store.create_account(account)
        except ConstraintViolation as exc:
            raise AccountExists(detail=exc.detail) from exc
        for name in role_names:
            self.store.assign_role(account.id, name)
        self.logger.info("account_created", account_id=account.id, roles=role_names)
        return account

    async def get_account(self, account_id: str) -> Account:
        return self._require(account_id)

    async def get_account_by_identifier(self, identifier: str) -> Account:
        account = find_account(self.store, identifier)
        if account is None:
            raise AccountNotFound()
        return account

    async def list_accounts(self) -> List[Account]:
        return self.store.list_accounts()

    async def update_account(
        self,
        account_id: str,
        *,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> Account:
        account = self._require(account_id)
        if email is not None:
            account.email = _normalize_email(email)
        if first_name is not None:
            account.first_name = first_name
        if last_name is not None:
            account.last_name = last_name
        if enabled is not None:
            account.enabled = enabled
        try:
            return self.store.save_account(account)
        except ConstraintViolation as exc:
            raise AccountExists(detail=exc.detail) from exc

    async def delete_account(self, account_id: str) -> None:
        if not self.store.delete_account(account_id):
            raise AccountNotFound()
        self.logger.info("account_deleted", account_id=account_id)

    async def change_password(self, account_id: str, old_password: str, new_password: str) -> None:
        account = self._require(account_id)
        if not self.hasher.verify(account.password_hash, old_password or "", algo=account.password_algo):
            self.logger.warning("password_change_rejected", account_id=account_id)
            raise InvalidCredentials("current password is incorrect")
        enforce_password_policy(new_password, self.settings.password_policy)
        account.password_hash, account.password_algo = self.hasher.hash(new_password)
        self.store.save_account(account)
        revoked = self._revoke_after_credential_change(account_id)
        self.logger.info("password_changed", account_id=account_id, sessions_revoked=revoked)

    async def set_password(self, account_id: str, new_password: str) -> None:
        """Administrative overwrite; no knowledge of the old password needed."""
        account = self._require(account_id)
        enforce_password_policy(new_password, self.settings.password_policy)
        account.password_hash, account.password_algo = self.hasher.hash(new_password)
        self.store.save_account(account)
        revoked = self._revoke_after_credential_change(account_id)
        self.logger.info("password_set", account_id=account_id, sessions_revoked=revoked)

    def _revoke_after_credential_change(self, account_id: str) -> int:
        if self.ledger is None or not self.settings.revoke_sessions_on_password_change:
            return 0
        return self.ledger.revoke_all(account_id)

    async def set_enabled(self, account_id: str, enabled: bool) -> Account:
        account = self._require(account_id)
        account.enabled = enabled
        account = self.store.save_account(account)
        self.logger.info("account_enabled_changed", account_id=account_id, enabled=enabled)
        return account

    async def set_locked(self, account_id: str, locked: bool) -> Account:
        account = self._require(account_id)
        if locked:
            # No expiry: stays locked until an administrator unlocks it
            account = self.store.lock_account(account_id) or account
        else:
            account = self.store.reset_failed_attempts(account_id, unlock=True) or account
        self.logger.info("account_lock_changed", account_id=account_id, locked=locked)
        return account

    # -- roles --------------------------------------------------------------

    async def create_role(self, name: str, description: Optional[str] = None) -> Role:
        name = (name or "").strip()
        if not name:
            raise ValidationError("role name is required")
        try:
            role = self.store.create_role(
                Role(id=new_id(), name=name, description=description, created_at=self._now())
            )
        except ConstraintViolation as exc:
            raise ConflictError("role already exists", detail=exc.detail) from exc
        self.logger.info("role_created", role=name)
        return role

    async def list_roles(self) -> List[Role]:
        return self.store.list_roles()

    async def delete_role(self, name: str) -> None:
        """Remove a role and every assignment of it."""
        if not self.store.delete_role(name):
            raise RoleNotFound(f"role not found: {name}")
        self.logger.info("role_deleted", role=name)

    async def assign_roles(self, account_id: str, names: Iterable[str]) -> List[str]:
        self._require(account_id)
        for name in names:
            if self.store.get_role(name) is None:
                raise RoleNotFound(f"role not found: {name}")
            self.store.assign_role(account_id, name)
        return self.store.get_account_roles(account_id)

    async def remove_roles(self, account_id: str, names: Iterable[str]) -> List[str]:
        self._require(account_id)
        for name in names:
            self.store.remove_role(account_id, name)
        return self.store.get_account_roles(account_id)

    async def get_roles(self, account_id: str) -> List[str]:
        self._require(account_id)
        return self.store.get_account_roles(account_id)
