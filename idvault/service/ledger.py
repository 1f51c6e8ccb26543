from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Union

from idvault.logging import get_logger
from idvault.storage.models import RefreshRecord, Session, utcnow

LedgerRow = Union[Session, RefreshRecord]


class LedgerStore(Protocol):
    def insert_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_access_jti(self, access_jti: str) -> Optional[Session]: ...

    def list_account_sessions(self, account_id: str) -> List[Session]: ...

    def revoke_session_row(self, session_id: str, revoked_at: datetime) -> bool: ...

    def insert_refresh_record(self, record: RefreshRecord) -> RefreshRecord: ...

    def get_refresh_by_jti(self, refresh_jti: str) -> Optional[RefreshRecord]: ...

    def list_session_refresh_records(self, session_id: str) -> List[RefreshRecord]: ...

    def list_account_refresh_records(self, account_id: str) -> List[RefreshRecord]: ...

    def revoke_refresh_record(self, record_id: str, revoked_at: datetime) -> bool: ...

    def touch_refresh_record(
        self, record_id: str, used_at: datetime
    ) -> Optional[RefreshRecord]: ...


class SessionLedger:
    """Record of issued tokens and the single authority on their liveness.

    A token that parses is only *live* if its ledger row exists, is not
    revoked and has not expired. Revocation is a compare-and-swap at the
    store, so it is idempotent and safe under concurrent callers.
    """

    def __init__(
        self, store: LedgerStore, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.store = store
        self._now = clock or utcnow
        self.logger = get_logger(__name__)

    def record_session(
        self,
        account_id: str,
        access_jti: str,
        ttl: timedelta,
        *,
        session_id: Optional[str] = None,
    ) -> Session:
        session = Session.new(account_id, access_jti, ttl, now=self._now(), session_id=session_id)
        return self.store.insert_session(session)

    def record_refresh(
        self,
        account_id: str,
        refresh_jti: str,
        token_hash: str,
        session_id: Optional[str],
        ttl: timedelta,
    ) -> RefreshRecord:
        record = RefreshRecord.new(
            account_id,
            refresh_jti,
            token_hash,
            ttl,
            now=self._now(),
            session_id=session_id,
        )
        return self.store.insert_refresh_record(record)

    def find_session(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def find_session_by_access_jti(self, access_jti: str) -> Optional[Session]:
        return self.store.get_session_by_access_jti(access_jti)

    def find_refresh_by_jti(self, refresh_jti: str) -> Optional[RefreshRecord]:
        return self.store.get_refresh_by_jti(refresh_jti)

    def is_live(self, row: Optional[LedgerRow]) -> bool:
        if row is None or row.revoked:
            return False
        return row.expires_at > self._now()

    def revoke(self, row: LedgerRow) -> bool:
        """Mark ``row`` revoked; False when it already was."""
        now = self._now()
        if isinstance(row, Session):
            changed = self.store.revoke_session_row(row.id, now)
        elif isinstance(row, RefreshRecord):
            changed = self.store.revoke_refresh_record(row.id, now)
        else:
            raise TypeError(f"cannot revoke {type(row).__name__}")
        if changed:
            row.revoked = True
            row.revoked_at = now
        return changed

    def revoke_session_cascade(self, session: Session) -> int:
        """Revoke a session and every refresh record minted alongside it."""
        revoked = int(self.revoke(session))
        for record in self.store.list_session_refresh_records(session.id):
            revoked += int(self.revoke(record))
        return revoked

    def revoke_all(self, account_id: str) -> int:
        revoked = 0
        for session in self.store.list_account_sessions(account_id):
            if not session.revoked:
                revoked += int(self.revoke(session))
        for record in self.store.list_account_refresh_records(account_id):
            if not record.revoked:
                revoked += int(self.revoke(record))
        if revoked:
            self.logger.info("ledger_account_revoked", account_id=account_id, rows=revoked)
        return revoked

    def touch_refresh(self, record: RefreshRecord) -> RefreshRecord:
        updated = self.store.touch_refresh_record(record.id, self._now())
        return updated or record

    def list_active_sessions(self, account_id: str) -> List[Session]:
        sessions = [
            s for s in self.store.list_account_sessions(account_id) if self.is_live(s)
        ]
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)
