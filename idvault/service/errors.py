from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from idvault.service.password import PolicyViolation


class ServiceError(Exception):
    """Base class for identity-service exceptions.

    Each class carries an HTTP-style ``status_code`` and a stable
    ``error_code`` so an outer surface can map failures without inspecting
    messages:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# -- authentication ---------------------------------------------------------


class InvalidCredentials(AuthenticationError):
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidAccessToken(AuthenticationError):
    error_code = "invalid_access_token"

    def __init__(self, message: str = "invalid access token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidRefreshToken(AuthenticationError):
    error_code = "invalid_refresh_token"

    def __init__(self, message: str = "invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidMfaCode(AuthenticationError):
    error_code = "invalid_mfa_code"

    def __init__(self, message: str = "invalid verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidMfaChallenge(AuthenticationError):
    error_code = "invalid_mfa_challenge"

    def __init__(self, message: str = "mfa challenge is invalid or expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


# -- account state ----------------------------------------------------------


class AccountDisabled(ForbiddenError):
    error_code = "account_disabled"

    def __init__(self, message: str = "account is disabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLocked(ForbiddenError):
    error_code = "account_locked"

    def __init__(self, message: str = "account is locked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MfaUnavailable(ForbiddenError):
    error_code = "mfa_unavailable"

    def __init__(self, message: str = "multi-factor authentication is disabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RateLimited(RateLimitedError):
    def __init__(self, message: str = "too many requests", **kwargs) -> None:
        super().__init__(message, **kwargs)


# -- tokens and policy ------------------------------------------------------


class TokenExpired(ValidationError):
    error_code = "token_expired"

    def __init__(self, message: str = "token has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenAlreadyUsed(ValidationError):
    error_code = "token_already_used"

    def __init__(self, message: str = "token has already been used", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenNotFound(NotFoundError):
    error_code = "token_not_found"

    def __init__(self, message: str = "token not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MfaNotEnabled(ValidationError):
    error_code = "mfa_not_enabled"

    def __init__(self, message: str = "mfa is not enabled for this account", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PasswordPolicyViolation(ValidationError):
    """Raised with every rule the candidate password broke."""

    error_code = "password_policy"

    def __init__(self, violations: Sequence["PolicyViolation"]) -> None:
        self.violations = list(violations)
        super().__init__(
            "; ".join(v.message for v in self.violations) or "password rejected",
            detail={"violations": [v.rule.value for v in self.violations]},
        )


class AccountNotFound(NotFoundError):
    error_code = "account_not_found"

    def __init__(self, message: str = "account not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RoleNotFound(NotFoundError):
    error_code = "role_not_found"

    def __init__(self, message: str = "role not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountExists(ConflictError):
    error_code = "account_exists"

    def __init__(self, message: str = "account already exists", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InvalidCredentials",
    "InvalidAccessToken",
    "InvalidRefreshToken",
    "InvalidMfaCode",
    "InvalidMfaChallenge",
    "AccountDisabled",
    "AccountLocked",
    "MfaUnavailable",
    "RateLimited",
    "TokenExpired",
    "TokenAlreadyUsed",
    "TokenNotFound",
    "MfaNotEnabled",
    "PasswordPolicyViolation",
    "AccountNotFound",
    "RoleNotFound",
    "AccountExists",
]
