from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - validation_error (400)
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
    """Resource conflict (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


INVALID_CREDENTIALS_KEY = "texts.invalid_credentials"
INVALID_CODE_KEY = "texts.invalid_code"


class InvalidCredentials(AuthenticationError):
    """Wrong secret, unknown identifier or locked account.

    Callers must not be able to tell these apart, so every instance carries the
    same message key regardless of the underlying reason.
    """

    message_key = INVALID_CREDENTIALS_KEY

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLocked(InvalidCredentials):
    """Internal signal: the failed-login threshold has been reached."""


class NoPendingChallenge(AuthenticationError):
    """A second-factor code arrived without an outstanding challenge."""

    def __init__(self, message: str = "no pending second-factor challenge", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidSecondFactorCode(AuthenticationError):
    """The submitted one-time code does not verify."""

    message_key = INVALID_CODE_KEY

    def __init__(self, message: str = "invalid code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ReplayedCode(InvalidSecondFactorCode):
    """The (user, code) pair was already accepted inside its window."""


class CleanupFailed(ServerError):
    """Forced account cleanup could not complete; nothing was removed."""


class UnknownLocalizationKey(KeyError):
    """Message key missing from the catalog. Never surfaces past the catalog."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "InvalidCredentials",
    "AccountLocked",
    "NoPendingChallenge",
    "InvalidSecondFactorCode",
    "ReplayedCode",
    "CleanupFailed",
    "UnknownLocalizationKey",
    "INVALID_CREDENTIALS_KEY",
    "INVALID_CODE_KEY",
]
