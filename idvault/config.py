from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from idvault.logging import get_logger

if TYPE_CHECKING:
    from idvault.service.password import PasswordPolicy

logger = get_logger(__name__)

MIN_SECRET_BYTES = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity core."""

    database_url: str | None = env_field(None, "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/idvault", "SHARED_FS_ROOT")
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_previous_secrets: str = env_field(
        "",
        "JWT_PREVIOUS_SECRETS",
        description="Comma-separated retired signing keys still accepted for verification",
    )
    jwt_issuer: str = env_field("idvault", "JWT_ISSUER")
    access_token_ttl_seconds: int = env_field(15 * 60, "ACCESS_TOKEN_TTL_SECONDS", gt=0)
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS", gt=0
    )
    strict_refresh_rotation: bool = env_field(
        True,
        "STRICT_REFRESH_ROTATION",
        description="Revoke the presented refresh record when rotating it",
    )

    lockout_max_attempts: int = env_field(5, "LOCKOUT_MAX_ATTEMPTS", gt=0)
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES", gt=0)

    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=0)
    password_max_length: int = env_field(
        128, "PASSWORD_MAX_LENGTH", description="Zero or negative disables the maximum"
    )
    password_require_upper: bool = env_field(True, "PASSWORD_REQUIRE_UPPER")
    password_require_lower: bool = env_field(True, "PASSWORD_REQUIRE_LOWER")
    password_require_digit: bool = env_field(True, "PASSWORD_REQUIRE_DIGIT")
    password_require_special: bool = env_field(False, "PASSWORD_REQUIRE_SPECIAL")
    revoke_sessions_on_password_change: bool = env_field(
        True, "REVOKE_SESSIONS_ON_PASSWORD_CHANGE"
    )

    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES", gt=0)
    reset_max_requests: int = env_field(3, "RESET_MAX_REQUESTS", gt=0)
    reset_window_minutes: int = env_field(60, "RESET_WINDOW_MINUTES", gt=0)

    enable_mfa: bool = env_field(True, "ENABLE_MFA")
    mfa_issuer: str | None = env_field(None, "MFA_ISSUER")
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")
    mfa_challenge_ttl_seconds: int = env_field(300, "MFA_CHALLENGE_TTL_SECONDS", gt=0)
    mfa_max_attempts: int = env_field(5, "MFA_MAX_ATTEMPTS", gt=0)
    totp_window: int = env_field(
        1, "TOTP_WINDOW", ge=0, description="Accepted clock drift in 30 second steps"
    )

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("idvault", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value.encode("utf-8")) < MIN_SECRET_BYTES:
                logger.warning("jwt_secret_short", min_bytes=MIN_SECRET_BYTES)
            return value
        # Persist a generated signing key so tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/idvault"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
            else:
                if len(persisted) >= MIN_SECRET_BYTES:
                    return persisted

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        logger.info("jwt_secret_generated", path=str(secret_path))
        return generated

    @model_validator(mode="after")
    def _check_storage(self) -> "Settings":
        if not self.use_memory_store and not self.database_url:
            raise ValueError("DATABASE_URL is required unless USE_MEMORY_STORE is enabled")
        return self

    @property
    def verification_secrets(self) -> tuple[str, ...]:
        return tuple(s.strip() for s in self.jwt_previous_secrets.split(",") if s.strip())

    @property
    def password_policy(self) -> "PasswordPolicy":
        from idvault.service.password import PasswordPolicy

        return PasswordPolicy(
            min_length=self.password_min_length,
            max_length=self.password_max_length,
            require_upper=self.password_require_upper,
            require_lower=self.password_require_lower,
            require_digit=self.password_require_digit,
            require_special=self.password_require_special,
        )

    @property
    def issuer_label(self) -> str:
        return self.mfa_issuer or self.jwt_issuer


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
