from __future__ import annotations

from typing import Optional


class AuthGateError(Exception):
    """Base class for session controller failures.

    Each exception class carries a stable ``error_code`` and a ``retryable``
    flag the login surface uses to decide between an inline message and a
    forced return to the login screen:
    - invalid_credentials (retryable, no state change)
    - profile_not_found (fatal, forces logout)
    - network_failure (retryable by the user, forces logout mid-promotion)
    - session_expired (handled like an identity "session ended" event)
    - invalid_transition (operation not legal in the current state)
    - password_rejected (retryable, no state change)
    - provider_error (anything else the identity provider reports)
    """

    error_code: str = "provider_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        if retryable is not None:
            self.retryable = retryable
        self.detail = detail or {}


class IdentityProviderError(AuthGateError):
    """The identity provider rejected or failed a request."""
    error_code = "provider_error"


class InvalidCredentialsError(IdentityProviderError):
    """Email/password pair was refused by the identity provider."""
    error_code = "invalid_credentials"
    retryable = True


class PasswordRejectedError(IdentityProviderError):
    """The identity provider refused the new password (policy, reuse)."""
    error_code = "password_rejected"
    retryable = True


class SessionExpiredDuringOperationError(IdentityProviderError):
    """An awaited call found no session where one was expected."""
    error_code = "session_expired"


class NetworkFailureError(AuthGateError):
    """Transport failure talking to the identity provider or backing store."""
    error_code = "network_failure"
    retryable = True


class ProfileNotFoundError(AuthGateError):
    """No authorization record exists for an authenticated identity."""
    error_code = "profile_not_found"


class InvalidTransitionError(AuthGateError):
    """Operation is not legal in the controller's current state."""
    error_code = "invalid_transition"


class ValidationError(AuthGateError):
    """Caller input is malformed (e.g. not an email address)."""
    error_code = "validation_error"
    retryable = True


__all__ = [
    "AuthGateError",
    "IdentityProviderError",
    "InvalidCredentialsError",
    "PasswordRejectedError",
    "SessionExpiredDuringOperationError",
    "NetworkFailureError",
    "ProfileNotFoundError",
    "InvalidTransitionError",
    "ValidationError",
]
