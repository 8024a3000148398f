"""
Backend Payload Normalisation.

The identity backend answers in several shapes for the same concept:
response objects or plain mappings, ``snake_case`` or ``camelCase`` keys,
``{"data": ...}`` envelopes, and factor lists wrapped in ``all`` / ``totp``
groups.  Each function here owns exactly one payload type and returns the
typed model the rest of the core works with.  Nothing outside this module
inspects raw backend payloads.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Optional

from ams_identity.exceptions import FactorIdMissingError
from ams_identity.models.auth_models import (
    BackendSession,
    EnrollmentTicket,
    MfaFactor,
    SessionEvent,
    SignInOutcome,
)
from ams_identity.models.enums import FactorStatus, FactorType, SessionEventType

__all__ = [
    "normalize_challenge_id",
    "normalize_enrollment",
    "normalize_factor",
    "normalize_factors",
    "normalize_session",
    "normalize_session_event",
    "normalize_sign_in",
]

_FACTOR_ID_KEYS: tuple[str, ...] = ("id", "factor_id", "factorId")

_SESSION_EVENT_KINDS: dict[str, SessionEventType] = {
    "INITIAL_SESSION": SessionEventType.RESTORED,
    "TOKEN_REFRESHED": SessionEventType.RESTORED,
    "USER_UPDATED": SessionEventType.RESTORED,
    "PASSWORD_RECOVERY": SessionEventType.RESTORED,
    "RESTORED": SessionEventType.RESTORED,
    "SIGNED_IN": SessionEventType.SIGNED_IN,
    "SIGNED_OUT": SessionEventType.SIGNED_OUT,
}


# ---------------------------------------------------------------------------
# Field access helpers
# ---------------------------------------------------------------------------

def _field(payload: Any, name: str) -> Any:
    """Read *name* from a mapping key or an object attribute."""
    if payload is None:
        return None
    if isinstance(payload, Mapping):
        return payload.get(name)
    return getattr(payload, name, None)


def _first(payload: Any, *names: str) -> Any:
    """Return the first non-empty value among *names*."""
    for name in names:
        value = _field(payload, name)
        if value is not None and value != "":
            return value
    return None


def _unwrap(payload: Any, *keys: str) -> Any:
    """Descend into a ``data`` envelope when *payload* lacks all of *keys*."""
    if _first(payload, *keys) is None:
        inner = _field(payload, "data")
        if inner is not None:
            return inner
    return payload


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

def normalize_session(raw: Any) -> Optional[BackendSession]:
    """Normalise a backend session payload.

    Returns ``None`` when there is no session or the payload does not
    identify a principal with an email address.
    """
    if raw is None:
        return None
    raw = _unwrap(raw, "user", "principal_id", "user_id", "access_token", "session")
    if _first(raw, "user", "principal_id", "user_id", "id", "sub") is None:
        # ``{"session": {...}}`` envelope
        raw = _field(raw, "session")
        if raw is None:
            return None

    user = _field(raw, "user")
    if user is not None:
        principal_id = _first(user, "id", "principal_id")
        email = _first(user, "email")
    else:
        principal_id = _first(raw, "principal_id", "user_id", "id", "sub")
        email = _first(raw, "email")

    if not principal_id or not email:
        return None

    return BackendSession(
        principal_id=str(principal_id),
        email=str(email),
        access_token=_first(raw, "access_token", "accessToken"),
        expires_at=_as_datetime(_first(raw, "expires_at", "expiresAt")),
    )


def normalize_sign_in(raw: Any) -> SignInOutcome:
    """Normalise a password sign-in response into session and factors."""
    raw = _unwrap(raw, "session", "user", "factors")
    session_raw = _field(raw, "session")
    return SignInOutcome(
        session=normalize_session(session_raw) if session_raw is not None else None,
        factors=normalize_factors(_field(raw, "factors")),
    )


def normalize_session_event(event: Any, session: Any = None) -> Optional[SessionEvent]:
    """Classify a backend session-change notification.

    Backend event names that carry no session transition (for example
    ``MFA_CHALLENGE_VERIFIED``) yield ``None``.
    """
    name = str(getattr(event, "value", event)).strip().upper()
    kind = _SESSION_EVENT_KINDS.get(name)
    if kind is None:
        return None
    if kind == SessionEventType.SIGNED_OUT:
        return SessionEvent(kind=kind)
    return SessionEvent(kind=kind, session=normalize_session(session))


# ---------------------------------------------------------------------------
# Factors
# ---------------------------------------------------------------------------

def normalize_factor(raw: Any) -> Optional[MfaFactor]:
    """Normalise one factor record; ``None`` when it carries no id."""
    factor_id = _first(raw, *_FACTOR_ID_KEYS)
    if not factor_id:
        return None

    kind = str(_first(raw, "factor_type", "factorType", "type") or "").lower()
    factor_type = FactorType.TOTP if kind == FactorType.TOTP else FactorType.UNKNOWN

    status = str(_first(raw, "status") or "").lower()
    factor_status = (
        FactorStatus.VERIFIED if status == FactorStatus.VERIFIED
        else FactorStatus.UNVERIFIED
    )

    return MfaFactor(
        id=str(factor_id),
        factor_type=factor_type,
        friendly_name=_first(raw, "friendly_name", "friendlyName"),
        status=factor_status,
    )


def normalize_factors(raw: Any) -> list[MfaFactor]:
    """Normalise a factor listing.

    Accepts a bare sequence, or an envelope exposing ``all`` (preferred),
    ``factors`` or ``totp``.  Duplicate ids are dropped, order is kept.
    """
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)):
        raw = _unwrap(raw, "all", "factors", "totp")
        if not isinstance(raw, (list, tuple)):
            raw = _first(raw, "all", "factors", "totp") or []

    factors: list[MfaFactor] = []
    seen: set[str] = set()
    for item in raw:
        factor = normalize_factor(item)
        if factor is None or factor.id in seen:
            continue
        seen.add(factor.id)
        factors.append(factor)
    return factors


def normalize_enrollment(raw: Any) -> EnrollmentTicket:
    """Normalise a TOTP enrollment response.

    Raises
    ------
    FactorIdMissingError
        If the response does not identify the new factor.
    """
    raw = _unwrap(raw, *_FACTOR_ID_KEYS)
    factor_id = _first(raw, *_FACTOR_ID_KEYS)
    if not factor_id:
        raise FactorIdMissingError(operation="start_enroll_totp")

    totp = _field(raw, "totp")
    qr_code = _first(totp, "qr_code", "qrCode") or _first(raw, "qr_code", "qrCode", "qr")
    otpauth_url = _first(totp, "uri", "otpauth_url", "otpauthUrl") or _first(
        raw, "otpauth_uri", "otpauthUri", "otpauth_url", "otpauthUrl", "uri",
    )

    return EnrollmentTicket(
        factor_id=str(factor_id),
        qr_code=qr_code,
        otpauth_url=otpauth_url,
    )


def normalize_challenge_id(raw: Any) -> Optional[str]:
    """Extract the challenge id from a challenge response."""
    if raw is None:
        return None
    if isinstance(raw, str):
        return raw or None
    raw = _unwrap(raw, "id", "challenge_id", "challengeId")
    challenge_id = _first(raw, "id", "challenge_id", "challengeId")
    return str(challenge_id) if challenge_id else None
