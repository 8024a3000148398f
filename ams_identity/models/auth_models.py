"""
Authentication Pipeline Models.

Pydantic models and enumerations for the contracts between the identity
backend, ``AuthService`` and the UI layer.  Every backend payload is
normalised into one of these models by ``ams_identity.utils.payloads``
before the rest of the core sees it.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field

from ams_identity.models.enums import (
    EnrollmentStatus,
    FactorStatus,
    FactorType,
    LoginStatus,
    SessionEventType,
)
from ams_identity.models.user import UserProfile


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

class AuthErrorCode(StrEnum):
    """Exhaustive enumeration of authentication error categories.

    Used by ``classify_backend_error`` to type backend failures and by
    the UI layer to decide which feedback to display.
    """

    CREDENTIALS_REQUIRED = "credentials_required"
    INVALID_CREDENTIALS = "invalid_credentials"
    USER_BANNED = "user_banned"
    PROFILE_NOT_FOUND = "profile_not_found"
    ACCOUNT_INACTIVE = "account_inactive"
    CHALLENGE_CREATION_FAILED = "challenge_creation_failed"
    MFA_CODE_REJECTED = "mfa_code_rejected"
    FACTOR_ALREADY_EXISTS = "factor_already_exists"
    FACTOR_ID_MISSING = "factor_id_missing"
    FACTOR_NOT_FOUND = "factor_not_found"
    ENROLLMENT_EXPIRED = "enrollment_expired"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    SESSION_SUPERSEDED = "session_superseded"
    AUDIT_WRITE_FAILED = "audit_write_failed"
    UNKNOWN_ERROR = "unknown_error"


# ---------------------------------------------------------------------------
# Backend error-code mapping
#
# Keys are matched first against the structured ``code`` attribute of a
# backend exception, then as substrings of its lower-cased message.
# ---------------------------------------------------------------------------

BACKEND_ERROR_MAP: dict[str, tuple[AuthErrorCode, str]] = {
    "invalid_credentials": (
        AuthErrorCode.INVALID_CREDENTIALS,
        "Incorrect email or password.",
    ),
    "invalid_grant": (
        AuthErrorCode.INVALID_CREDENTIALS,
        "Incorrect email or password.",
    ),
    "invalid login credentials": (
        AuthErrorCode.INVALID_CREDENTIALS,
        "Incorrect email or password.",
    ),
    "user_banned": (
        AuthErrorCode.USER_BANNED,
        "Your account has been locked. Contact your administrator.",
    ),
    "mfa_factor_name_conflict": (
        AuthErrorCode.FACTOR_ALREADY_EXISTS,
        "You already have a 2FA factor. If you are re-enrolling, "
        "please disable the existing factor first.",
    ),
    "mfa_verified_factor_exists": (
        AuthErrorCode.FACTOR_ALREADY_EXISTS,
        "You already have a 2FA factor. If you are re-enrolling, "
        "please disable the existing factor first.",
    ),
    "already exists": (
        AuthErrorCode.FACTOR_ALREADY_EXISTS,
        "You already have a 2FA factor. If you are re-enrolling, "
        "please disable the existing factor first.",
    ),
    "mfa_factor_not_found": (
        AuthErrorCode.FACTOR_NOT_FOUND,
        "The selected 2FA factor no longer exists.",
    ),
    "mfa_verification_failed": (
        AuthErrorCode.MFA_CODE_REJECTED,
        "The verification code is incorrect.",
    ),
    "invalid totp code": (
        AuthErrorCode.MFA_CODE_REJECTED,
        "The verification code is incorrect.",
    ),
}


# ---------------------------------------------------------------------------
# Backend session
# ---------------------------------------------------------------------------

class BackendSession(BaseModel):
    """An authenticated principal as reported by the identity backend.

    Attributes
    ----------
    principal_id:
        The backend's identifier for the authenticated identity.
    email:
        Email address of the principal, used to resolve the profile.
    access_token:
        Bearer token of the session, never included in ``repr``.
    expires_at:
        Expiry of the access token, when the backend reports one.
    """

    principal_id: str
    email: str
    access_token: Optional[str] = Field(default=None, repr=False)
    expires_at: Optional[datetime] = None


class SessionEvent(BaseModel):
    """A normalised backend session-change notification."""

    kind: SessionEventType
    session: Optional[BackendSession] = None


# ---------------------------------------------------------------------------
# MFA
# ---------------------------------------------------------------------------

class MfaFactor(BaseModel):
    """A registered second factor."""

    id: str
    factor_type: FactorType = FactorType.UNKNOWN
    friendly_name: Optional[str] = None
    status: FactorStatus = FactorStatus.UNVERIFIED

    @property
    def is_totp(self) -> bool:
        return self.factor_type == FactorType.TOTP

    @property
    def is_verified(self) -> bool:
        return self.status == FactorStatus.VERIFIED


class EnrollmentTicket(BaseModel):
    """Result of starting a TOTP enrollment.

    ``qr_code`` is an image payload (usually an SVG data URI) and
    ``otpauth_url`` the manual-entry URI.  Either may be missing, but the
    URI is always retained when the backend supplies it.
    """

    factor_id: str
    qr_code: Optional[str] = None
    otpauth_url: Optional[str] = None

    @property
    def display_payload(self) -> Optional[str]:
        """What the UI should render: the QR image when present, else the URI."""
        return self.qr_code or self.otpauth_url


class EnrollmentSession(BaseModel):
    """Working state of one in-progress TOTP enrollment (UI-local)."""

    factor_id: Optional[str] = None
    qr_code: Optional[str] = None
    otpauth_url: Optional[str] = None
    code: str = ""
    status: EnrollmentStatus = EnrollmentStatus.IDLE


class BulkDisableResult(BaseModel):
    """Outcome of disabling every TOTP factor.

    Attributes
    ----------
    remaining:
        The factor list as re-read after the operation.
    failures:
        Factor id → last error message for factors that could not be
        removed after all attempts.
    """

    remaining: list[MfaFactor] = Field(default_factory=list)
    failures: dict[str, str] = Field(default_factory=dict)

    @property
    def remaining_totp(self) -> list[MfaFactor]:
        return [factor for factor in self.remaining if factor.is_totp]

    @property
    def complete(self) -> bool:
        return not self.remaining_totp


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------

class SignInOutcome(BaseModel):
    """Normalised backend response to a password sign-in."""

    session: Optional[BackendSession] = None
    factors: list[MfaFactor] = Field(default_factory=list)


class LoginResult(BaseModel):
    """Unified response of ``AuthService.login``.

    ``status`` is ``mfa_required`` when the password was accepted but a
    second factor must be verified; ``factors`` then lists the candidates
    for ``verify_mfa``.  Otherwise ``user`` holds the signed-in profile.
    """

    status: LoginStatus
    user: Optional[UserProfile] = None
    factors: list[MfaFactor] = Field(default_factory=list)

    @property
    def requires_mfa(self) -> bool:
        return self.status == LoginStatus.MFA_REQUIRED
