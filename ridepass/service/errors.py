from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients branch on:
    - invalid_input (400)
    - code_expired / code_invalid (400)
    - already_registered (400)
    - token_invalid / invalid_credentials (401)
    - not_verified / user_suspended / user_inactive (403)
    - user_not_found (404)
    - rate_limited (429)
    """

    status_code: int = 400
    error_code: str = "invalid_input"

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


class InvalidInput(ServiceError):
    """Malformed identifier, role, purpose or payload (400)."""
    status_code = 400
    error_code = "invalid_input"


class RateLimited(ServiceError):
    """Too many code requests or wrong guesses (429)."""
    status_code = 429
    error_code = "rate_limited"


class CodeExpired(ServiceError):
    """No live code for the identifier and purpose (400)."""
    status_code = 400
    error_code = "code_expired"


class CodeInvalid(ServiceError):
    """A live code exists but the submitted one does not match (400)."""
    status_code = 400
    error_code = "code_invalid"


class AlreadyRegistered(ServiceError):
    status_code = 400
    error_code = "already_registered"


class NotVerified(ServiceError):
    """Identity is still pending verification (403)."""
    status_code = 403
    error_code = "not_verified"


class UserSuspended(ServiceError):
    status_code = 403
    error_code = "user_suspended"


class UserInactive(UserSuspended):
    """Deactivated identity; handled like a suspension by callers."""
    error_code = "user_inactive"


class TokenInvalid(ServiceError):
    """Bad signature, wrong type, issuer, audience or expiry (401)."""
    status_code = 401
    error_code = "token_invalid"


class InvalidCredentials(ServiceError):
    status_code = 401
    error_code = "invalid_credentials"


class UserNotFound(ServiceError):
    status_code = 404
    error_code = "user_not_found"


__all__ = [
    "ServiceError",
    "InvalidInput",
    "RateLimited",
    "CodeExpired",
    "CodeInvalid",
    "AlreadyRegistered",
    "NotVerified",
    "UserSuspended",
    "UserInactive",
    "TokenInvalid",
    "InvalidCredentials",
    "UserNotFound",
]
