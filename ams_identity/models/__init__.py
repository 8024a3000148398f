"""
Data Models Package.

Re-exports all Pydantic models for short imports:
    from ams_identity.models import UserProfile, MfaFactor, LoginResult
"""

from __future__ import annotations

from ams_identity.models.auth_models import (
    BACKEND_ERROR_MAP,
    AuthErrorCode,
    BackendSession,
    BulkDisableResult,
    EnrollmentSession,
    EnrollmentTicket,
    LoginResult,
    MfaFactor,
    SessionEvent,
    SignInOutcome,
)
from ams_identity.models.enums import (
    AuditAction,
    EnrollmentStatus,
    FactorStatus,
    FactorType,
    LoginStatus,
    SessionEventType,
    UserRole,
)
from ams_identity.models.user import UserProfile

__all__ = [
    "BACKEND_ERROR_MAP",
    "AuditAction",
    "AuthErrorCode",
    "BackendSession",
    "BulkDisableResult",
    "EnrollmentSession",
    "EnrollmentStatus",
    "EnrollmentTicket",
    "FactorStatus",
    "FactorType",
    "LoginResult",
    "LoginStatus",
    "MfaFactor",
    "SessionEvent",
    "SessionEventType",
    "SignInOutcome",
    "UserProfile",
    "UserRole",
]
