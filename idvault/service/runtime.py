from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from idvault.config import Settings, get_settings, reset_settings_cache
from idvault.logging import get_logger
from idvault.service.accounts import AccountService
from idvault.service.auth import AuthService
from idvault.service.credentials import CredentialHasher
from idvault.service.email import EmailNotifier
from idvault.service.ledger import SessionLedger
from idvault.service.mfa import MfaService
from idvault.service.password import PasswordResetService
from idvault.service.tokens import TokenCodec
from idvault.storage.memory import MemoryStore
from idvault.storage.models import utcnow
from idvault.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with '***' for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Wires the store, codec, ledger and services from one Settings object."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store=None,
        clock: Optional[Callable[[], datetime]] = None,
        hasher: Optional[CredentialHasher] = None,
        notifier=None,
    ) -> None:
        self.settings = settings or get_settings()
        clock = clock or utcnow
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store or self._build_store()
        self.codec = TokenCodec(
            self.settings.jwt_secret,
            self.settings.jwt_issuer,
            verification_secrets=self.settings.verification_secrets,
            clock=clock,
        )
        self.ledger = SessionLedger(self.store, clock=clock)
        self.hasher = hasher or CredentialHasher()
        self.notifier = notifier or EmailNotifier(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            reset_ttl_minutes=self.settings.reset_token_ttl_minutes,
        )
        self.mfa = MfaService(self.store, self.settings, clock=clock)
        self.auth = AuthService(
            self.store,
            self.codec,
            self.ledger,
            self.hasher,
            self.settings,
            mfa=self.mfa,
            clock=clock,
        )
        self.passwords = PasswordResetService(
            self.store,
            self.hasher,
            self.settings,
            ledger=self.ledger,
            notifier=self.notifier,
            clock=clock,
        )
        self.accounts = AccountService(
            self.store, self.hasher, self.settings, ledger=self.ledger, clock=clock
        )
        logger.info("runtime_ready", store_type=type(self.store).__name__)

    def _build_store(self):
        key_material = self.settings.mfa_encryption_key or self.settings.jwt_secret
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                return MemoryStore(
                    fs_root=self.settings.shared_fs_root, mfa_encryption_key=key_material
                )
            return PostgresStore(self.settings.database_url, mfa_encryption_key=key_material)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh environment; TEST_MODE only."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
