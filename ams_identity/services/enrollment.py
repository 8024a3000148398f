"""
TOTP Enrollment Controller.

Drives the enrollment screen through ``idle → enrolling → verifying →
enabled`` and back.  The in-progress secret (QR payload, URI, typed code)
lives only in this controller; it is discarded on completion,
cancellation or disablement and never persisted.
"""

from __future__ import annotations

from typing import Optional

from ams_identity.exceptions import AuthError, FactorNotFoundError, InvalidTransitionError
from ams_identity.logger import StructuredLogger
from ams_identity.models.auth_models import (
    BulkDisableResult,
    EnrollmentSession,
    EnrollmentTicket,
    MfaFactor,
)
from ams_identity.models.enums import EnrollmentStatus
from ams_identity.services.auth_service import AuthService

_TRANSITIONS: dict[EnrollmentStatus, frozenset[EnrollmentStatus]] = {
    EnrollmentStatus.IDLE: frozenset({
        EnrollmentStatus.IDLE, EnrollmentStatus.ENROLLING, EnrollmentStatus.ENABLED,
    }),
    EnrollmentStatus.ENROLLING: frozenset({
        EnrollmentStatus.ENROLLING, EnrollmentStatus.VERIFYING, EnrollmentStatus.IDLE,
    }),
    EnrollmentStatus.VERIFYING: frozenset({
        EnrollmentStatus.ENABLED, EnrollmentStatus.ENROLLING, EnrollmentStatus.IDLE,
    }),
    EnrollmentStatus.ENABLED: frozenset({EnrollmentStatus.IDLE}),
}


class TotpEnrollmentController:
    """State machine for one user's TOTP enrollment.

    Parameters
    ----------
    auth_service:
        Performs the backend operations and audits them.
    logger:
        Structured JSON logger.
    """

    def __init__(self, auth_service: AuthService, logger: StructuredLogger) -> None:
        self._auth: AuthService = auth_service
        self._logger: StructuredLogger = logger
        self._session: EnrollmentSession = EnrollmentSession()
        self._factors: list[MfaFactor] = []
        self._error: Optional[str] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def status(self) -> EnrollmentStatus:
        return self._session.status

    @property
    def session(self) -> EnrollmentSession:
        """A copy of the working enrollment state."""
        return self._session.model_copy()

    @property
    def factors(self) -> list[MfaFactor]:
        return list(self._factors)

    @property
    def error(self) -> Optional[str]:
        """Message of the last failed step, cleared when a new step starts."""
        return self._error

    @property
    def has_verified_totp(self) -> bool:
        return any(f.is_totp and f.is_verified for f in self._factors)

    def _move(self, target: EnrollmentStatus) -> None:
        current = self._session.status
        if target not in _TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Cannot move enrollment from {current} to {target}."
            )
        self._session.status = target
        self._logger.debug("Enrollment %s -> %s", current, target)

    def _discard(self, target: EnrollmentStatus) -> None:
        """Drop the in-progress secret and move to *target*."""
        self._move(target)
        self._session = EnrollmentSession(status=target)

    def _settle(self) -> None:
        target = EnrollmentStatus.ENABLED if self.has_verified_totp else EnrollmentStatus.IDLE
        if self._session.status != target:
            self._move(target)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def refresh(self) -> list[MfaFactor]:
        """Reload the factor list; an idle screen shows ``enabled`` when a verified TOTP exists."""
        self._factors = await self._auth.list_mfa_factors()
        if self._session.status in (EnrollmentStatus.IDLE, EnrollmentStatus.ENABLED):
            self._settle()
        return self.factors

    async def start(self) -> EnrollmentTicket:
        """Request a new enrollment and hold its QR payload.

        Starting again while ``enrolling`` replaces the pending ticket.
        On failure the controller returns to ``idle``.
        """
        self._move(EnrollmentStatus.ENROLLING)
        self._error = None
        try:
            ticket = await self._auth.start_enroll_totp()
        except AuthError as exc:
            self._error = exc.message
            self._discard(EnrollmentStatus.IDLE)
            raise

        self._session = EnrollmentSession(
            factor_id=ticket.factor_id,
            qr_code=ticket.qr_code,
            otpauth_url=ticket.otpauth_url,
            status=EnrollmentStatus.ENROLLING,
        )
        return ticket

    def set_code(self, code: str) -> None:
        if self._session.status != EnrollmentStatus.ENROLLING:
            raise InvalidTransitionError("No enrollment is waiting for a code.")
        self._session.code = code

    async def verify(self, code: Optional[str] = None) -> list[MfaFactor]:
        """Submit the typed code.

        A rejected code returns to ``enrolling`` with the QR payload kept,
        so the user can retry or restart.  On success the secret is
        discarded and the factor list refreshed.
        """
        if code is not None:
            self.set_code(code)
        factor_id = self._session.factor_id
        if self._session.status != EnrollmentStatus.ENROLLING or factor_id is None:
            raise InvalidTransitionError("No enrollment in progress.")

        self._move(EnrollmentStatus.VERIFYING)
        self._error = None
        try:
            await self._auth.verify_enroll_totp(factor_id, self._session.code)
        except AuthError as exc:
            self._error = exc.message
            self._session.code = ""
            self._move(EnrollmentStatus.ENROLLING)
            raise

        self._discard(EnrollmentStatus.ENABLED)
        try:
            self._factors = await self._auth.list_mfa_factors()
        except AuthError as exc:
            self._error = exc.message
            self._logger.warning("Factor refresh after enrollment failed: %s", exc.message)
        return self.factors

    async def cancel(self) -> None:
        """Abandon the pending enrollment and remove its unverified factor."""
        factor_id = self._session.factor_id
        if factor_id is not None and self._session.status == EnrollmentStatus.ENROLLING:
            try:
                await self._auth.disable_totp(factor_id)
            except AuthError as exc:
                self._logger.warning(
                    "Could not remove abandoned factor %s: %s", factor_id, exc.message,
                )
        if self._session.status != EnrollmentStatus.ENABLED:
            self._discard(EnrollmentStatus.IDLE)

    async def disable(self, factor_id: Optional[str] = None) -> list[MfaFactor]:
        """Remove one factor (the first TOTP factor when none is given)."""
        target = factor_id
        if target is None:
            if not self._factors:
                self._factors = await self._auth.list_mfa_factors()
            totp = [f for f in self._factors if f.is_totp]
            if not totp:
                raise FactorNotFoundError(operation="disable_totp")
            target = totp[0].id

        self._error = None
        try:
            await self._auth.disable_totp(target)
        except AuthError as exc:
            self._error = exc.message
            raise

        self._discard(EnrollmentStatus.IDLE)
        await self.refresh()
        return self.factors

    async def disable_all(self) -> BulkDisableResult:
        """Remove every TOTP factor and settle on the refreshed list."""
        self._error = None
        result = await self._auth.disable_all_totp()
        self._factors = list(result.remaining)
        self._discard(EnrollmentStatus.IDLE)
        self._settle()
        if result.failures:
            self._error = "Some factors could not be disabled: " + ", ".join(
                f"{fid} ({msg})" for fid, msg in result.failures.items()
            )
        return result
