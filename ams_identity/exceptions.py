"""
Authentication Errors.

Typed exception hierarchy raised by ``AuthService`` and the enrollment
controller, plus ``classify_backend_error`` which turns any identity-backend
failure into one of these types.

Every error carries a human-readable ``message`` suitable for display, the
``operation`` that failed and, for MFA operations, the ``factor_id``.
``retryable`` is ``True`` for conditions the user can recover from by
restarting a sub-flow (expired challenge, existing factor, outage) rather
than re-entering a credential.
"""

from __future__ import annotations

from typing import ClassVar, Optional

import httpx

from ams_identity.models.auth_models import BACKEND_ERROR_MAP, AuthErrorCode


class AuthError(Exception):
    """Base class for every identity and session failure."""

    code: ClassVar[AuthErrorCode] = AuthErrorCode.UNKNOWN_ERROR
    default_message: ClassVar[str] = "An unexpected error occurred. Please try again later."
    retryable: ClassVar[bool] = False

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        operation: Optional[str] = None,
        factor_id: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        self.message: str = message or self.default_message
        self.operation: Optional[str] = operation
        self.factor_id: Optional[str] = factor_id
        self.original_error: Optional[BaseException] = original_error
        super().__init__(self.message)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(code={self.code!s}, operation={self.operation!r}, "
            f"factor_id={self.factor_id!r}, message={self.message!r})"
        )


class CredentialsRequiredError(AuthError):
    code = AuthErrorCode.CREDENTIALS_REQUIRED
    default_message = "Email and password are required."


class InvalidCredentialsError(AuthError):
    code = AuthErrorCode.INVALID_CREDENTIALS
    default_message = "Incorrect email or password."


class AccountLockedError(AuthError):
    code = AuthErrorCode.USER_BANNED
    default_message = "Your account has been locked. Contact your administrator."


class ProfileNotFoundError(AuthError):
    """The backend authenticated a principal with no matching user profile."""

    code = AuthErrorCode.PROFILE_NOT_FOUND
    default_message = "No user profile is registered for this account."


class AccountInactiveError(ProfileNotFoundError):
    code = AuthErrorCode.ACCOUNT_INACTIVE
    default_message = "This account has been deactivated. Contact your administrator."


class ChallengeCreationError(AuthError):
    code = AuthErrorCode.CHALLENGE_CREATION_FAILED
    default_message = "The verification challenge could not be created."
    retryable = True


class MfaCodeRejectedError(AuthError):
    code = AuthErrorCode.MFA_CODE_REJECTED
    default_message = "The verification code is incorrect."


class FactorAlreadyExistsError(AuthError):
    code = AuthErrorCode.FACTOR_ALREADY_EXISTS
    default_message = (
        "You already have a 2FA factor. If you are re-enrolling, "
        "please disable the existing factor first."
    )
    retryable = True


class FactorIdMissingError(AuthError):
    code = AuthErrorCode.FACTOR_ID_MISSING
    default_message = "Could not retrieve factor id from the enrollment response."


class FactorNotFoundError(AuthError):
    code = AuthErrorCode.FACTOR_NOT_FOUND
    default_message = "No TOTP factor found to disable."


class EnrollmentExpiredError(AuthError):
    code = AuthErrorCode.ENROLLMENT_EXPIRED
    default_message = (
        "The enrollment session expired. Please start a new enrollment, "
        "rescan the QR code, and enter the fresh code."
    )
    retryable = True


class BackendUnavailableError(AuthError):
    code = AuthErrorCode.BACKEND_UNAVAILABLE
    default_message = "Cannot reach the identity service. Check your internet connection."
    retryable = True


class SessionSupersededError(AuthError):
    """A sign-out completed while this sign-in was still in flight."""

    code = AuthErrorCode.SESSION_SUPERSEDED
    default_message = "The session ended while signing in. Please sign in again."


class AuditWriteError(AuthError):
    """Raised by audit sinks; always swallowed by ``AuditEmitter``."""

    code = AuthErrorCode.AUDIT_WRITE_FAILED
    default_message = "The audit event could not be recorded."


class InvalidTransitionError(RuntimeError):
    """Raised when the enrollment state machine is driven out of order."""


_ERROR_CLASSES: dict[AuthErrorCode, type[AuthError]] = {
    AuthErrorCode.INVALID_CREDENTIALS: InvalidCredentialsError,
    AuthErrorCode.USER_BANNED: AccountLockedError,
    AuthErrorCode.FACTOR_ALREADY_EXISTS: FactorAlreadyExistsError,
    AuthErrorCode.FACTOR_NOT_FOUND: FactorNotFoundError,
    AuthErrorCode.MFA_CODE_REJECTED: MfaCodeRejectedError,
}

_NETWORK_ERRORS: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    httpx.TransportError,
)


def _lookup(exc: BaseException) -> Optional[tuple[AuthErrorCode, str]]:
    """Find *exc* in ``BACKEND_ERROR_MAP`` by structured code, then by message."""
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code.lower() in BACKEND_ERROR_MAP:
        return BACKEND_ERROR_MAP[code.lower()]

    error_str = str(exc).lower()
    for key, entry in BACKEND_ERROR_MAP.items():
        if key in error_str:
            return entry
    return None


def is_backend_outage(exc: BaseException) -> bool:
    """``True`` for transport failures and 5xx responses."""
    if isinstance(exc, _NETWORK_ERRORS):
        return True
    status = getattr(exc, "status", None)
    return isinstance(status, int) and status >= 500


def classify_backend_error(
    exc: BaseException,
    *,
    operation: str,
    factor_id: Optional[str] = None,
    fallback: type[AuthError] = AuthError,
) -> AuthError:
    """Map an identity-backend exception to a typed ``AuthError``.

    Parameters
    ----------
    exc:
        The exception raised by the backend call.
    operation:
        Name of the failing operation, recorded on the error.
    factor_id:
        Factor involved in the operation, if any.
    fallback:
        Error class used when *exc* matches no known condition.  The
        backend's own message is preserved in that case.

    Returns
    -------
    AuthError
    """
    if isinstance(exc, AuthError):
        return exc

    if is_backend_outage(exc):
        return BackendUnavailableError(
            operation=operation, factor_id=factor_id, original_error=exc,
        )

    mapped = _lookup(exc)
    if mapped is not None:
        error_code, human_message = mapped
        error_cls = _ERROR_CLASSES.get(error_code, fallback)
        return error_cls(
            human_message,
            operation=operation,
            factor_id=factor_id,
            original_error=exc,
        )

    return fallback(
        str(exc) or None,
        operation=operation,
        factor_id=factor_id,
        original_error=exc,
    )
