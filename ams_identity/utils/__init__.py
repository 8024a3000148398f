"""Shared utilities for the AMS identity core.

Convenience re-exports so consumers can import directly from
``ams_identity.utils`` while full module imports remain supported.
"""

from ams_identity.utils.audit import AuditEmitter, AuditEvent, AuditSink
from ams_identity.utils.payloads import (
    normalize_challenge_id,
    normalize_enrollment,
    normalize_factor,
    normalize_factors,
    normalize_session,
    normalize_session_event,
    normalize_sign_in,
)

__all__ = [
    "AuditEmitter",
    "AuditEvent",
    "AuditSink",
    "normalize_challenge_id",
    "normalize_enrollment",
    "normalize_factor",
    "normalize_factors",
    "normalize_session",
    "normalize_session_event",
    "normalize_sign_in",
]
