"""
Shared Enumerations for AMS Identity Models.

All string enumerations for type-safe field constraints.
StrEnum values compare equal to their string equivalents,
so code like ``if role == 'admin'`` continues to work.
"""

from __future__ import annotations

from enum import StrEnum


class UserRole(StrEnum):
    """Application roles exposed to consumers.

    The core does not interpret roles; authorization policy lives in the
    consuming screens.
    """

    ADMIN = "admin"
    MANAGER = "manager"
    USER = "user"


class FactorType(StrEnum):
    """Second-factor kinds.  Only TOTP is modelled."""

    TOTP = "totp"
    UNKNOWN = "unknown"


class FactorStatus(StrEnum):
    """Verification state of an enrolled factor."""

    UNVERIFIED = "unverified"
    VERIFIED = "verified"


class SessionEventType(StrEnum):
    """Normalised backend session-change notifications."""

    RESTORED = "restored"
    SIGNED_IN = "signed_in"
    SIGNED_OUT = "signed_out"


class LoginStatus(StrEnum):
    """Outcome of a password login."""

    AUTHENTICATED = "authenticated"
    MFA_REQUIRED = "mfa_required"


class EnrollmentStatus(StrEnum):
    """States of the TOTP enrollment state machine."""

    IDLE = "idle"
    ENROLLING = "enrolling"
    VERIFYING = "verifying"
    ENABLED = "enabled"


class AuditAction(StrEnum):
    """Namespaced action tags written to the audit trail."""

    SIGN_IN = "auth.sign_in"
    SIGN_IN_FAILED = "auth.sign_in_failed"
    SIGN_OUT = "auth.sign_out"
    MFA_CHALLENGE_REQUIRED = "auth.mfa_challenge_required"
    MFA_VERIFY = "auth.mfa_verify"
    MFA_VERIFY_FAILED = "auth.mfa_verify_failed"
    MFA_ENROLL_START = "auth.mfa_enroll_start"
    MFA_ENROLL_START_FAILED = "auth.mfa_enroll_start_failed"
    MFA_ENROLL_VERIFY = "auth.mfa_enroll_verify"
    MFA_ENROLL_VERIFY_FAILED = "auth.mfa_enroll_verify_failed"
    MFA_DISABLE = "auth.mfa_disable"
    MFA_DISABLE_FAILED = "auth.mfa_disable_failed"
    PASSWORD_RESET_REQUESTED = "auth.password_reset_requested"
    PASSWORD_RESET = "auth.password_reset"
