from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries a stable ``error_code`` and the HTTP ``status_code``
    the API layer responds with:
    - invalid_input (400)
    - duplicate_email (409)
    - invalid_credentials, expired_credential, malformed_credential,
      missing_credential (401)
    - account_disabled (403)
    - not_found (404)
    - rate_limited (429)
    - store_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "invalid_input"
    retriable: bool = False

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


class InvalidInputError(ServiceError):
    """Malformed email, password outside length bounds, or missing fields (400)."""
    status_code = 400
    error_code = "invalid_input"


class DuplicateEmailError(ServiceError):
    """An account already exists for the email (409)."""
    status_code = 409
    error_code = "duplicate_email"


class CredentialError(ServiceError):
    """Base for authentication failures (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class InvalidCredentialsError(CredentialError):
    """Unknown email, wrong password, or unknown refresh token (401)."""
    error_code = "invalid_credentials"


class ExpiredCredentialError(CredentialError):
    error_code = "expired_credential"


class MalformedCredentialError(CredentialError):
    error_code = "malformed_credential"


class MissingCredentialError(CredentialError):
    error_code = "missing_credential"


class AccountDisabledError(ServiceError):
    """Account exists but is inactive (403)."""
    status_code = 403
    error_code = "account_disabled"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class StoreUnavailableError(ServiceError):
    """The credential store failed; the operation may be retried (503)."""
    status_code = 503
    error_code = "store_unavailable"
    retriable = True


__all__ = [
    "ServiceError",
    "InvalidInputError",
    "DuplicateEmailError",
    "CredentialError",
    "InvalidCredentialsError",
    "ExpiredCredentialError",
    "MalformedCredentialError",
    "MissingCredentialError",
    "AccountDisabledError",
    "NotFoundError",
    "RateLimitedError",
    "StoreUnavailableError",
]
