from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from idvault.logging import get_logger
from idvault.storage.common import SecretCipher, ensure_utc
from idvault.storage.errors import ConstraintViolation, SchemaError
from idvault.storage.models import (
    Account,
    MfaChallenge,
    RefreshRecord,
    ResetToken,
    Role,
    Session,
)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

REQUIRED_TABLES = (
    "account",
    "role",
    "account_role",
    "auth_session",
    "refresh_record",
    "password_reset_token",
    "mfa_challenge",
)

_ACCOUNT_COLUMNS = (
    "id, username, email, password_hash, password_algo, enabled, locked, "
    "failed_attempts, locked_until, mfa_enabled, mfa_secret, first_name, last_name, "
    "created_at, updated_at, last_login_at"
)


def _str_id(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


class PostgresStore:
    """Postgres-backed credential store.

    Compare-and-swap operations are single ``UPDATE ... WHERE <flag> = FALSE
    RETURNING id`` statements so concurrent callers cannot both succeed.
    """

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: str,
        verify_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = SecretCipher(mfa_encryption_key)
        if verify_schema:
            self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def apply_schema(self) -> None:
        """Create any missing tables from the bundled DDL."""
        ddl = SCHEMA_PATH.read_text()
        with self._connect() as conn:
            conn.execute(ddl)
        self.logger.info("postgres_schema_applied")

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise SchemaError(
                "Missing required Postgres tables: {}. Apply idvault/storage/schema.sql "
                "or run scripts/bootstrap_admin.py --init-schema.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # -- row mapping --------------------------------------------------------

    def _account_from_row(self, row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            username=row["username"],
            email=row.get("email"),
            password_hash=row["password_hash"],
            password_algo=row.get("password_algo") or "argon2id",
            enabled=row.get("enabled", True),
            locked=row.get("locked", False),
            failed_attempts=row.get("failed_attempts") or 0,
            locked_until=ensure_utc(row.get("locked_until")),
            mfa_enabled=row.get("mfa_enabled", False),
            mfa_secret=self._cipher.decrypt(row.get("mfa_secret")),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            created_at=ensure_utc(row["created_at"]),
            updated_at=ensure_utc(row["updated_at"]),
            last_login_at=ensure_utc(row.get("last_login_at")),
        )

    @staticmethod
    def _role_from_row(row: dict) -> Role:
        return Role(
            id=str(row["id"]),
            name=row["name"],
            description=row.get("description"),
            created_at=ensure_utc(row["created_at"]),
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            access_jti=row["access_jti"],
            created_at=ensure_utc(row["created_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            revoked=row.get("revoked", False),
            revoked_at=ensure_utc(row.get("revoked_at")),
        )

    @staticmethod
    def _refresh_from_row(row: dict) -> RefreshRecord:
        return RefreshRecord(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            refresh_jti=row["refresh_jti"],
            token_hash=row["token_hash"],
            session_id=_str_id(row.get("session_id")),
            created_at=ensure_utc(row["created_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            revoked=row.get("revoked", False),
            revoked_at=ensure_utc(row.get("revoked_at")),
            last_used_at=ensure_utc(row.get("last_used_at")),
        )

    @staticmethod
    def _reset_from_row(row: dict) -> ResetToken:
        return ResetToken(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            token_hash=row["token_hash"],
            expires_at=ensure_utc(row["expires_at"]),
            created_at=ensure_utc(row["created_at"]),
            used=row.get("used", False),
            used_at=ensure_utc(row.get("used_at")),
        )

    @staticmethod
    def _challenge_from_row(row: dict) -> MfaChallenge:
        return MfaChallenge(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            handle_hash=row["handle_hash"],
            created_at=ensure_utc(row["created_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            attempts=row.get("attempts") or 0,
            consumed=row.get("consumed", False),
            consumed_at=ensure_utc(row.get("consumed_at")),
        )

    @staticmethod
    def _unique_field(exc: errors.UniqueViolation) -> str:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
        if "email" in constraint:
            return "email"
        if "username" in constraint:
            return "username"
        return constraint or "unknown"

    # -- accounts -----------------------------------------------------------

    def create_account(self, account: Account) -> Account:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO account ({_ACCOUNT_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.username,
                        account.email,
                        account.password_hash,
                        account.password_algo,
                        account.enabled,
                        account.locked,
                        account.failed_attempts,
                        account.locked_until,
                        account.mfa_enabled,
                        self._cipher.encrypt(account.mfa_secret),
                        account.first_name,
                        account.last_name,
                        account.created_at,
                        account.updated_at,
                        account.last_login_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = self._unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return account

    def _fetch_account(self, where: str, params: tuple) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE {where}", params
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._fetch_account("id = %s", (account_id,))

    def get_account_by_username(self, username: str) -> Optional[Account]:
        return self._fetch_account("username = %s", (username,))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_account("lower(email) = lower(%s)", (email.strip(),))

    def account_exists(self, username: str, email: Optional[str] = None) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 AS found FROM account
                WHERE username = %s OR (%s::text IS NOT NULL AND lower(email) = lower(%s))
                LIMIT 1
                """,
                (username, email, email),
            ).fetchone()
        return bool(row)

    def list_accounts(self) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM account ORDER BY created_at"
            ).fetchall()
        return [self._account_from_row(r) for r in rows]

    def save_account(self, account: Account) -> Account:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE account SET
                        username = %s, email = %s, password_hash = %s, password_algo = %s,
                        enabled = %s, mfa_enabled = %s, mfa_secret = %s,
                        first_name = %s, last_name = %s, last_login_at = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (
                        account.username,
                        account.email,
                        account.password_hash,
                        account.password_algo,
                        account.enabled,
                        account.mfa_enabled,
                        self._cipher.encrypt(account.mfa_secret),
                        account.first_name,
                        account.last_name,
                        account.last_login_at,
                        account.id,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = self._unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        if not row:
            raise ConstraintViolation("account not found", {"account_id": account.id})
        return self._account_from_row(row)

    def delete_account(self, account_id: str) -> bool:
        # Ledger, reset, challenge and role rows go with ON DELETE CASCADE
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM account WHERE id = %s RETURNING id", (account_id,)
            ).fetchone()
        return bool(row)

    def increment_failed_attempts(
        self, account_id: str, *, max_attempts: int, lock_until: datetime
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE account SET
                    failed_attempts = failed_attempts + 1,
                    locked = CASE WHEN failed_attempts + 1 >= %s THEN TRUE ELSE locked END,
                    locked_until = CASE WHEN failed_attempts + 1 >= %s THEN %s ELSE locked_until END,
                    updated_at = now()
                WHERE id = %s
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (max_attempts, max_attempts, lock_until, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def reset_failed_attempts(
        self, account_id: str, *, unlock: bool = False, last_login_at: Optional[datetime] = None
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE account SET
                    failed_attempts = 0,
                    locked = CASE WHEN %s THEN FALSE ELSE locked END,
                    locked_until = CASE WHEN %s THEN NULL ELSE locked_until END,
                    last_login_at = COALESCE(%s, last_login_at),
                    updated_at = now()
                WHERE id = %s
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (unlock, unlock, last_login_at, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def lock_account(
        self, account_id: str, *, locked_until: Optional[datetime] = None
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE account SET locked = TRUE, locked_until = %s, updated_at = now()
                WHERE id = %s
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (locked_until, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    # -- roles --------------------------------------------------------------

    def create_role(self, role: Role) -> Role:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO role (id, name, description, created_at) VALUES (%s, %s, %s, %s)",
                    (role.id, role.name, role.description, role.created_at),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("role already exists", {"field": "name"}) from exc
        return role

    def get_role(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE name = %s", (name,)).fetchone()
        return self._role_from_row(row) if row else None

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM role ORDER BY name").fetchall()
        return [self._role_from_row(r) for r in rows]

    def delete_role(self, name: str) -> bool:
        # account_role rows go with ON DELETE CASCADE
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM role WHERE name = %s RETURNING id", (name,)
            ).fetchone()
        return bool(row)

    def assign_role(self, account_id: str, role_name: str) -> None:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account_role (account_id, role_id)
                    SELECT %s, id FROM role WHERE name = %s
                    ON CONFLICT (account_id, role_id) DO NOTHING
                    RETURNING role_id
                    """,
                    (account_id, role_name),
                ).fetchone()
                if row is None:
                    exists = conn.execute(
                        "SELECT 1 AS found FROM role WHERE name = %s", (role_name,)
                    ).fetchone()
                    if not exists:
                        raise ConstraintViolation("role not found", {"role": role_name})
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("account not found", {"account_id": account_id}) from exc

    def remove_role(self, account_id: str, role_name: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM account_role
                WHERE account_id = %s AND role_id = (SELECT id FROM role WHERE name = %s)
                RETURNING role_id
                """,
                (account_id, role_name),
            ).fetchone()
        return bool(row)

    def get_account_roles(self, account_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.name FROM account_role ar
                JOIN role r ON r.id = ar.role_id
                WHERE ar.account_id = %s
                ORDER BY r.name
                """,
                (account_id,),
            ).fetchall()
        return [r["name"] for r in rows]

    # -- session ledger -----------------------------------------------------

    def insert_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, account_id, access_jti, created_at, expires_at, revoked, revoked_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.account_id,
                        session.access_jti,
                        session.created_at,
                        session.expires_at,
                        session.revoked,
                        session.revoked_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("access jti already recorded", {"field": "access_jti"}) from exc
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth_session WHERE id = %s", (session_id,)).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_access_jti(self, access_jti: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE access_jti = %s", (access_jti,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_account_sessions(self, account_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE account_id = %s ORDER BY created_at DESC",
                (account_id,),
            ).fetchall()
        return [self._session_from_row(r) for r in rows]

    def revoke_session_row(self, session_id: str, revoked_at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET revoked = TRUE, revoked_at = %s
                WHERE id = %s AND revoked = FALSE
                RETURNING id
                """,
                (revoked_at, session_id),
            ).fetchone()
        return bool(row)

    def insert_refresh_record(self, record: RefreshRecord) -> RefreshRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_record (
                        id, account_id, refresh_jti, token_hash, session_id,
                        created_at, expires_at, revoked, revoked_at, last_used_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.account_id,
                        record.refresh_jti,
                        record.token_hash,
                        record.session_id,
                        record.created_at,
                        record.expires_at,
                        record.revoked,
                        record.revoked_at,
                        record.last_used_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("refresh jti already recorded", {"field": "refresh_jti"}) from exc
        return record

    def get_refresh_by_jti(self, refresh_jti: str) -> Optional[RefreshRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_record WHERE refresh_jti = %s", (refresh_jti,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def list_session_refresh_records(self, session_id: str) -> List[RefreshRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_record WHERE session_id = %s", (session_id,)
            ).fetchall()
        return [self._refresh_from_row(r) for r in rows]

    def list_account_refresh_records(self, account_id: str) -> List[RefreshRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_record WHERE account_id = %s", (account_id,)
            ).fetchall()
        return [self._refresh_from_row(r) for r in rows]

    def revoke_refresh_record(self, record_id: str, revoked_at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_record SET revoked = TRUE, revoked_at = %s
                WHERE id = %s AND revoked = FALSE
                RETURNING id
                """,
                (revoked_at, record_id),
            ).fetchone()
        return bool(row)

    def touch_refresh_record(self, record_id: str, used_at: datetime) -> Optional[RefreshRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE refresh_record SET last_used_at = %s WHERE id = %s RETURNING *",
                (used_at, record_id),
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def delete_account_ledger(self, account_id: str) -> int:
        with self._connect() as conn:
            refresh = conn.execute(
                "DELETE FROM refresh_record WHERE account_id = %s", (account_id,)
            ).rowcount
            sessions = conn.execute(
                "DELETE FROM auth_session WHERE account_id = %s", (account_id,)
            ).rowcount
        return (refresh or 0) + (sessions or 0)

    # -- password reset -----------------------------------------------------

    def insert_reset_token(self, token: ResetToken) -> ResetToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_reset_token (id, account_id, token_hash, expires_at, created_at, used, used_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.account_id,
                        token.token_hash,
                        token.expires_at,
                        token.created_at,
                        token.used,
                        token.used_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("account not found", {"account_id": token.account_id}) from exc
        return token

    def get_reset_token_by_hash(self, token_hash: str) -> Optional[ResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._reset_from_row(row) if row else None

    def count_reset_tokens_since(self, account_id: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS n FROM password_reset_token
                WHERE account_id = %s AND created_at >= %s
                """,
                (account_id, since),
            ).fetchone()
        return int(row["n"]) if row else 0

    def mark_reset_token_used(self, token_id: str, used_at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token SET used = TRUE, used_at = %s
                WHERE id = %s AND used = FALSE
                RETURNING id
                """,
                (used_at, token_id),
            ).fetchone()
        return bool(row)

    def delete_expired_reset_tokens(self, before: datetime) -> int:
        with self._connect() as conn:
            deleted = conn.execute(
                "DELETE FROM password_reset_token WHERE expires_at <= %s", (before,)
            ).rowcount
        return deleted or 0

    # -- mfa login challenges -----------------------------------------------

    def insert_mfa_challenge(self, challenge: MfaChallenge) -> MfaChallenge:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO mfa_challenge (id, account_id, handle_hash, created_at, expires_at, attempts, consumed, consumed_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    challenge.id,
                    challenge.account_id,
                    challenge.handle_hash,
                    challenge.created_at,
                    challenge.expires_at,
                    challenge.attempts,
                    challenge.consumed,
                    challenge.consumed_at,
                ),
            )
        return challenge

    def get_mfa_challenge_by_hash(self, handle_hash: str) -> Optional[MfaChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mfa_challenge WHERE handle_hash = %s", (handle_hash,)
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def increment_mfa_challenge_attempts(self, challenge_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE mfa_challenge SET attempts = attempts + 1 WHERE id = %s RETURNING attempts",
                (challenge_id,),
            ).fetchone()
        return int(row["attempts"]) if row else 0

    def consume_mfa_challenge(self, challenge_id: str, consumed_at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_challenge SET consumed = TRUE, consumed_at = %s
                WHERE id = %s AND consumed = FALSE
                RETURNING id
                """,
                (consumed_at, challenge_id),
            ).fetchone()
        return bool(row)

    def delete_stale_mfa_challenges(self, before: datetime) -> int:
        with self._connect() as conn:
            deleted = conn.execute(
                "DELETE FROM mfa_challenge WHERE consumed = TRUE OR expires_at <= %s", (before,)
            ).rowcount
        return deleted or 0
