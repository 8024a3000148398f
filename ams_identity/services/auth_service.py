"""
Authentication Service.

Single orchestrator for the identity and session lifecycle: bootstrap,
password login with TOTP step-up, MFA enrollment and removal, logout,
and password reset.

Sits between the consuming screens and the identity backend so that the
screens stay thin form handlers.  Every state change goes through the
injected ``SessionStore``; every security-relevant step is recorded via
the ``AuditEmitter`` without waiting for the audit write.

Failures are raised as ``AuthError`` subclasses carrying a human-readable
``message``; screens never inspect raw backend exceptions.
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timezone
from types import TracebackType
from typing import Callable, Optional, Protocol

from ams_identity.auth import SessionListener, SessionStore, SessionTransition
from ams_identity.backend import IdentityBackend
from ams_identity.config import AppConfig
from ams_identity.exceptions import (
    AccountInactiveError,
    AuthError,
    BackendUnavailableError,
    ChallengeCreationError,
    CredentialsRequiredError,
    EnrollmentExpiredError,
    FactorNotFoundError,
    MfaCodeRejectedError,
    ProfileNotFoundError,
    SessionSupersededError,
    classify_backend_error,
    is_backend_outage,
)
from ams_identity.logger import StructuredLogger
from ams_identity.models.auth_models import (
    BackendSession,
    BulkDisableResult,
    EnrollmentTicket,
    LoginResult,
    MfaFactor,
    SessionEvent,
)
from ams_identity.models.enums import (
    AuditAction,
    FactorType,
    LoginStatus,
    SessionEventType,
)
from ams_identity.models.user import UserProfile
from ams_identity.services.base_service import BaseService
from ams_identity.utils.audit import AuditEmitter, DetailValue
from ams_identity.utils.payloads import (
    normalize_challenge_id,
    normalize_enrollment,
    normalize_factors,
    normalize_session,
    normalize_sign_in,
)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_WHITESPACE_RE: re.Pattern[str] = re.compile(r"\s+")

# Backend wording for a stale or consumed enrollment challenge.
_CHALLENGE_RE: re.Pattern[str] = re.compile(r"challenge", re.IGNORECASE)
_CHALLENGE_EXPIRED_CODE: str = "mfa_challenge_expired"

_ENTITY_USER: str = "user"
_ENTITY_FACTOR: str = "mfa_factor"


class ProfileResolver(Protocol):
    """Maps a principal's email to an application profile."""

    async def get_by_email(self, email: str) -> Optional[UserProfile]: ...  # noqa: E704


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class AuthService(BaseService):
    """Centralised identity and session service.

    Receives all infrastructure dependencies via ``__init__``.  Call
    :meth:`start` once at process start to subscribe to backend session
    changes and restore any persisted session; call :meth:`close` (or use
    ``async with``) on shutdown.

    Parameters
    ----------
    backend:
        Identity backend adapter (credentials, sessions, MFA).
    profiles:
        Resolves an authenticated principal to a ``UserProfile``.
    audit:
        Fire-and-forget audit recorder.
    store:
        Injectable session holder, the single source of truth for the
        current user.
    config:
        Application configuration.
    logger:
        Structured JSON logger.
    """

    def __init__(
        self,
        backend: IdentityBackend,
        profiles: ProfileResolver,
        audit: AuditEmitter,
        store: SessionStore,
        config: AppConfig,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(logger)
        self._backend: IdentityBackend = backend
        self._profiles: ProfileResolver = profiles
        self._audit: AuditEmitter = audit
        self._store: SessionStore = store
        self._config: AppConfig = config
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._event_tasks: set[asyncio.Task[None]] = set()
        self._last_friendly_name: Optional[str] = None
        self._logouts_in_flight: int = 0

    # ==================================================================
    # Reactive access
    # ==================================================================

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def user(self) -> Optional[UserProfile]:
        return self._store.user

    @property
    def is_authenticated(self) -> bool:
        return self._store.is_authenticated

    @property
    def is_loading(self) -> bool:
        return self._store.is_loading

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register *listener* for session changes.  Returns the unsubscribe callable."""
        return self._store.subscribe(listener)

    # ==================================================================
    # Helpers
    # ==================================================================

    @staticmethod
    def normalize_email(email: Optional[str]) -> str:
        """Strip whitespace and lowercase an email address."""
        return (email or "").strip().lower()

    @staticmethod
    def normalize_code(code: Optional[str]) -> str:
        """Remove all whitespace from a one-time code."""
        return _WHITESPACE_RE.sub("", code or "")

    def _current_user_id(self) -> Optional[str]:
        user = self._store.user
        return user.id if user is not None else None

    def _friendly_name(self) -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        name = f"{self._config.MFA_FRIENDLY_NAME_PREFIX} {stamp}"
        if name == self._last_friendly_name:
            name = f"{name}-2"
        self._last_friendly_name = name
        return name

    async def _resolve_profile(
        self, session: BackendSession, *, operation: str,
    ) -> UserProfile:
        """Look up the profile for *session* and check that it may sign in.

        Raises
        ------
        ProfileNotFoundError
            No profile matches the principal's email.
        AccountInactiveError
            The profile exists but is deactivated.
        BackendUnavailableError
            The profile directory could not be queried.
        """
        try:
            profile = await self._profiles.get_by_email(session.email)
        except Exception as exc:
            raise classify_backend_error(
                exc, operation=operation, fallback=BackendUnavailableError,
            ) from exc

        if profile is None:
            raise ProfileNotFoundError(operation=operation)
        if not profile.is_active:
            raise AccountInactiveError(operation=operation)
        return profile

    async def _discard_backend_session(self, operation: str) -> None:
        """End a backend session that did not resolve to a usable profile."""
        try:
            await self._backend.sign_out()
        except Exception as exc:
            self._logger.warning(
                "Could not end orphaned backend session after %s: %s",
                operation,
                exc,
            )

    async def _establish(
        self, session: BackendSession, *, epoch: int, operation: str,
    ) -> tuple[UserProfile, SessionTransition]:
        """Resolve *session* and commit the profile to the store.

        Every failure is recorded as a failed sign-in.  When the profile
        cannot be resolved, for whatever reason, the backend session is
        ended so no principal outlives the failed attempt.
        """
        try:
            user = await self._resolve_profile(session, operation=operation)
        except AuthError as exc:
            self._audit_sign_in_failed(session.email, exc)
            await self._discard_backend_session(operation)
            raise

        result = self._store.transition(user, epoch=epoch)
        if not result.applied:
            error = SessionSupersededError(operation=operation)
            self._audit_sign_in_failed(session.email, error)
            raise error
        return user, result

    def _audit_sign_in_failed(self, email: str, error: AuthError) -> None:
        self._audit.emit(
            AuditAction.SIGN_IN_FAILED,
            _ENTITY_USER,
            details={"email": email, "error": error.message, "reason": str(error.code)},
        )

    # ==================================================================
    # Lifecycle
    # ==================================================================

    async def start(self) -> Optional[UserProfile]:
        """Subscribe to session changes and restore any persisted session.

        Always ends the store's loading phase, whatever the outcome.
        Calling it again is a no-op returning the current user.

        Returns
        -------
        Optional[UserProfile]
            The restored user, or ``None``.
        """
        if self._unsubscribe is not None:
            return self._store.user

        self._unsubscribe = self._backend.on_session_change(self._on_session_event)

        epoch = self._store.epoch
        user: Optional[UserProfile] = None
        try:
            session = normalize_session(await self._backend.get_session())
            if session is not None:
                user = await self._resolve_profile(session, operation="bootstrap")
        except Exception as exc:
            error = classify_backend_error(exc, operation="bootstrap")
            self._logger.warning(
                "Session bootstrap failed: %s",
                error.message,
                extra={"event": "BOOTSTRAP_FAILED", "error_code": str(error.code)},
            )

        if user is not None:
            self._store.transition(user, epoch=epoch)
        elif self._store.is_loading:
            self._store.transition(None)

        current = self._store.user
        self._logger.info(
            "Session bootstrap complete: %s",
            current.email if current is not None else "no session",
            extra={"event": "BOOTSTRAP", "user_id": current.id if current else None},
        )
        return current

    async def drain(self) -> None:
        """Wait for in-flight session-event handling and audit writes."""
        while self._event_tasks:
            await asyncio.gather(*list(self._event_tasks), return_exceptions=True)
        await self._audit.drain()

    async def close(self) -> None:
        """Stop listening to the backend and flush pending work."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.drain()

    async def __aenter__(self) -> "AuthService":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        await self.close()

    # ==================================================================
    # Backend session events
    # ==================================================================

    def _on_session_event(self, event: SessionEvent) -> None:
        # The epoch is taken on receipt so a sign-out that lands before the
        # task runs still invalidates this event.
        epoch = self._store.epoch
        task = asyncio.get_running_loop().create_task(
            self._handle_session_event(event, epoch),
        )
        self._event_tasks.add(task)
        task.add_done_callback(self._event_tasks.discard)

    async def _handle_session_event(self, event: SessionEvent, epoch: int) -> None:
        if event.kind == SessionEventType.SIGNED_OUT:
            result = self._store.transition(None)
            previous = result.previous
            if previous is not None and self._logouts_in_flight:
                # logout() records this sign-out once it resumes.
                self._logger.debug("Backend confirmed sign-out for %s.", previous.email)
            elif previous is not None:
                self._audit.emit(
                    AuditAction.SIGN_OUT,
                    _ENTITY_USER,
                    entity_id=previous.id,
                    user_id=previous.id,
                    details={"initiated_by": "backend"},
                )
                self._logger.info(
                    "Backend ended session for %s", previous.email,
                    extra={"event": "LOGOUT", "user_id": previous.id},
                )
            return

        session = event.session
        if session is None:
            self._logger.debug("Ignoring %s event without a session.", event.kind)
            return

        operation = f"session_event.{event.kind}"
        try:
            user = await self._resolve_profile(session, operation=operation)
        except ProfileNotFoundError as exc:
            self._logger.warning(
                "Session for %s has no usable profile: %s", session.email, exc.message,
            )
            current = self._store.user
            if current is not None and current.email.lower() == session.email.lower():
                self._store.transition(None)
            return
        except AuthError as exc:
            self._logger.warning(
                "Could not resolve profile for %s event: %s", event.kind, exc.message,
            )
            return

        result = self._store.transition(user, epoch=epoch)
        if not result.applied:
            self._logger.info("Discarded stale %s event for %s.", event.kind, user.email)
            return
        if event.kind == SessionEventType.SIGNED_IN and result.changed:
            self._audit.emit(
                AuditAction.SIGN_IN,
                _ENTITY_USER,
                entity_id=user.id,
                user_id=user.id,
                details={"email": user.email},
            )

    # ==================================================================
    # Login
    # ==================================================================

    async def login(self, email: str, password: str) -> LoginResult:
        """Authenticate with email and password.

        Parameters
        ----------
        email:
            The raw email entered by the user.
        password:
            The raw password entered by the user.

        Returns
        -------
        LoginResult
            ``AUTHENTICATED`` with the user, or ``MFA_REQUIRED`` with the
            verified factors to challenge.

        Raises
        ------
        CredentialsRequiredError
            Email or password is empty.  Nothing is sent or audited.
        AuthError
            Any rejection, with a human-readable message.
        """
        email = self.normalize_email(email)
        if not email or not password:
            raise CredentialsRequiredError(operation="login")

        epoch = self._store.epoch
        try:
            raw = await self._backend.sign_in_with_password(email, password)
        except Exception as exc:
            error = classify_backend_error(exc, operation="login")
            self._audit.emit(
                AuditAction.SIGN_IN_FAILED,
                _ENTITY_USER,
                details={"email": email, "error": str(exc) or error.message},
            )
            self._logger.warning(
                "Login failed for %s: %s",
                email,
                error.message,
                extra={"event": "LOGIN_FAILED", "email": email, "error_code": str(error.code)},
            )
            raise error from exc

        outcome = normalize_sign_in(raw)
        if outcome.session is None:
            if not outcome.factors:
                error = AuthError(
                    "The identity service did not return a session.", operation="login",
                )
                self._audit.emit(
                    AuditAction.SIGN_IN_FAILED,
                    _ENTITY_USER,
                    details={"email": email, "error": error.message},
                )
                raise error

            self._audit.emit(
                AuditAction.MFA_CHALLENGE_REQUIRED,
                _ENTITY_USER,
                details={"email": email, "factor_count": len(outcome.factors)},
            )
            self._logger.info(
                "MFA step-up required for %s", email,
                extra={"event": "MFA_REQUIRED", "email": email},
            )
            return LoginResult(status=LoginStatus.MFA_REQUIRED, factors=outcome.factors)

        user, result = await self._establish(outcome.session, epoch=epoch, operation="login")
        if result.changed:
            self._audit.emit(
                AuditAction.SIGN_IN,
                _ENTITY_USER,
                entity_id=user.id,
                user_id=user.id,
                details={"email": user.email},
            )
        self._logger.info(
            "User authenticated: %s (role: %s)",
            user.email,
            user.role,
            extra={"event": "LOGIN", "email": user.email, "user_id": user.id},
        )
        return LoginResult(status=LoginStatus.AUTHENTICATED, user=user)

    async def verify_mfa(
        self,
        factor_id: str,
        code: str,
        challenge_id: Optional[str] = None,
    ) -> UserProfile:
        """Complete a step-up login with a TOTP code.

        A challenge is created first unless *challenge_id* is supplied.

        Raises
        ------
        ChallengeCreationError
            The backend would not issue a challenge.  Not audited.
        MfaCodeRejectedError
            The code was rejected.
        """
        cleaned = self.normalize_code(code)
        if not factor_id or not cleaned:
            raise CredentialsRequiredError(
                "Enter the 6-digit code from your authenticator app.",
                operation="verify_mfa",
                factor_id=factor_id or None,
            )

        epoch = self._store.epoch
        mfa = self._backend.mfa

        if challenge_id is None:
            try:
                challenge_id = normalize_challenge_id(await mfa.challenge(factor_id))
            except Exception as exc:
                raise ChallengeCreationError(
                    operation="verify_mfa", factor_id=factor_id, original_error=exc,
                ) from exc
            if not challenge_id:
                raise ChallengeCreationError(operation="verify_mfa", factor_id=factor_id)

        try:
            await mfa.verify(factor_id, cleaned, challenge_id=challenge_id)
        except Exception as exc:
            error = classify_backend_error(
                exc, operation="verify_mfa", factor_id=factor_id,
                fallback=MfaCodeRejectedError,
            )
            self._audit.emit(
                AuditAction.MFA_VERIFY_FAILED,
                _ENTITY_FACTOR,
                entity_id=factor_id,
                details={"factor_id": factor_id, "error": str(exc) or error.message},
            )
            raise error from exc

        try:
            session = normalize_session(await self._backend.get_session())
        except Exception as exc:
            raise classify_backend_error(exc, operation="verify_mfa") from exc
        if session is None:
            raise AuthError(
                "No session was established after verification.",
                operation="verify_mfa",
                factor_id=factor_id,
            )

        user, _ = await self._establish(session, epoch=epoch, operation="verify_mfa")
        self._audit.emit(
            AuditAction.MFA_VERIFY,
            _ENTITY_FACTOR,
            entity_id=factor_id,
            user_id=user.id,
            details={"factor_id": factor_id},
        )
        self._logger.info(
            "MFA step-up verified for %s", user.email,
            extra={"event": "MFA_VERIFIED", "user_id": user.id},
        )
        return user

    # ==================================================================
    # Factor management
    # ==================================================================

    async def list_mfa_factors(self) -> list[MfaFactor]:
        """Return the current user's enrolled factors, de-duplicated by id."""
        try:
            raw = await self._backend.mfa.list_factors()
        except Exception as exc:
            raise classify_backend_error(exc, operation="list_mfa_factors") from exc
        return normalize_factors(raw)

    async def start_enroll_totp(self) -> EnrollmentTicket:
        """Begin TOTP enrollment under a fresh, timestamped friendly name.

        Raises
        ------
        FactorAlreadyExistsError
            The user already holds a factor that blocks enrollment.
        FactorIdMissingError
            The backend returned no factor identifier.
        """
        friendly_name = self._friendly_name()
        user_id = self._current_user_id()
        try:
            raw = await self._backend.mfa.enroll(
                factor_type=FactorType.TOTP.value, friendly_name=friendly_name,
            )
            ticket = normalize_enrollment(raw)
        except Exception as exc:
            error = classify_backend_error(exc, operation="start_enroll_totp")
            self._audit.emit(
                AuditAction.MFA_ENROLL_START_FAILED,
                _ENTITY_FACTOR,
                user_id=user_id,
                details={"friendly_name": friendly_name, "error": error.message},
            )
            raise error from exc

        self._audit.emit(
            AuditAction.MFA_ENROLL_START,
            _ENTITY_FACTOR,
            entity_id=ticket.factor_id,
            user_id=user_id,
            details={"friendly_name": friendly_name},
        )
        return ticket

    def _classify_enrollment_error(self, exc: Exception, factor_id: str) -> AuthError:
        if not isinstance(exc, AuthError) and not is_backend_outage(exc):
            code = getattr(exc, "code", None)
            if code == _CHALLENGE_EXPIRED_CODE or _CHALLENGE_RE.search(str(exc)):
                return EnrollmentExpiredError(
                    operation="verify_enroll_totp", factor_id=factor_id, original_error=exc,
                )

        error = classify_backend_error(
            exc, operation="verify_enroll_totp", factor_id=factor_id,
            fallback=MfaCodeRejectedError,
        )
        # Code rejections during enrollment surface the backend's own wording.
        if type(error) is MfaCodeRejectedError and error.original_error is exc and str(exc):
            return MfaCodeRejectedError(
                str(exc),
                operation="verify_enroll_totp",
                factor_id=factor_id,
                original_error=exc,
            )
        return error

    async def verify_enroll_totp(self, factor_id: str, code: str) -> None:
        """Confirm a pending enrollment with the first code from the authenticator.

        Raises
        ------
        EnrollmentExpiredError
            The enrollment challenge is stale; restart enrollment.
        MfaCodeRejectedError
            Any other rejection, carrying the backend's message.
        """
        cleaned = self.normalize_code(code)
        if not factor_id or not cleaned:
            raise CredentialsRequiredError(
                "Enter the 6-digit code from your authenticator app.",
                operation="verify_enroll_totp",
                factor_id=factor_id or None,
            )

        mfa = self._backend.mfa
        verify_factor = getattr(mfa, "verify_factor", None)
        try:
            if callable(verify_factor):
                await verify_factor(factor_id, cleaned)
            else:
                await mfa.verify(factor_id, cleaned)
        except Exception as exc:
            error = self._classify_enrollment_error(exc, factor_id)
            self._audit.emit(
                AuditAction.MFA_ENROLL_VERIFY_FAILED,
                _ENTITY_FACTOR,
                entity_id=factor_id,
                user_id=self._current_user_id(),
                details={"factor_id": factor_id, "error": str(exc) or error.message},
            )
            raise error from exc

        self._audit.emit(
            AuditAction.MFA_ENROLL_VERIFY,
            _ENTITY_FACTOR,
            entity_id=factor_id,
            user_id=self._current_user_id(),
            details={"factor_id": factor_id},
        )

    async def disable_totp(self, factor_id: str) -> None:
        """Remove one factor."""
        if not factor_id:
            raise FactorNotFoundError(operation="disable_totp")

        try:
            await self._backend.mfa.unenroll(factor_id)
        except Exception as exc:
            error = classify_backend_error(exc, operation="disable_totp", factor_id=factor_id)
            self._audit.emit(
                AuditAction.MFA_DISABLE_FAILED,
                _ENTITY_FACTOR,
                entity_id=factor_id,
                user_id=self._current_user_id(),
                details={"factor_id": factor_id, "error": error.message},
            )
            raise error from exc

        self._audit.emit(
            AuditAction.MFA_DISABLE,
            _ENTITY_FACTOR,
            entity_id=factor_id,
            user_id=self._current_user_id(),
            details={"factor_id": factor_id},
        )

    async def disable_all_totp(self) -> BulkDisableResult:
        """Remove every TOTP factor, re-listing between passes.

        Individual failures do not stop the remaining removals.  The
        factor list is always refreshed before returning, and failures
        are reported only for factors that are still present.
        """
        failures: dict[str, str] = {}
        for attempt in range(1, self._config.MFA_BULK_DISABLE_ATTEMPTS + 1):
            targets = [f for f in await self.list_mfa_factors() if f.is_totp]
            if not targets:
                break
            for factor in targets:
                try:
                    await self.disable_totp(factor.id)
                except AuthError as exc:
                    failures[factor.id] = exc.message
                    self._logger.warning(
                        "Pass %d: could not disable factor %s: %s",
                        attempt, factor.id, exc.message,
                    )
                else:
                    failures.pop(factor.id, None)

        remaining = await self.list_mfa_factors()
        remaining_ids = {factor.id for factor in remaining}
        return BulkDisableResult(
            remaining=remaining,
            failures={fid: msg for fid, msg in failures.items() if fid in remaining_ids},
        )

    # ==================================================================
    # Logout
    # ==================================================================

    async def logout(self) -> None:
        """End the session remotely, then always clear it locally.

        The local session is cleared and the sign-out audited even when
        the backend call fails; that failure is re-raised afterwards.
        Exactly one ``auth.sign_out`` is recorded even when the backend's
        SIGNED_OUT event is handled before this call resumes.
        """
        previous = self._store.user
        remote_error: Optional[AuthError] = None
        self._logouts_in_flight += 1
        try:
            try:
                await self._backend.sign_out()
            except Exception as exc:
                remote_error = classify_backend_error(exc, operation="logout")
                self._logger.warning(
                    "Server-side sign_out failed for %s: %s",
                    previous.email if previous else "anonymous",
                    remote_error.message,
                )
            result = self._store.transition(None)
        finally:
            self._logouts_in_flight -= 1
        if result.previous is not None:
            previous = result.previous

        details: dict[str, DetailValue] = {"remote_sign_out": remote_error is None}
        if remote_error is not None:
            details["error"] = remote_error.message
        self._audit.emit(
            AuditAction.SIGN_OUT,
            _ENTITY_USER,
            entity_id=previous.id if previous else None,
            user_id=previous.id if previous else None,
            details=details,
        )
        self._logger.info(
            "User logged out: %s",
            previous.email if previous else "anonymous",
            extra={"event": "LOGOUT", "user_id": previous.id if previous else None},
        )

        if remote_error is not None:
            raise remote_error from remote_error.original_error

    # ==================================================================
    # Password reset
    # ==================================================================

    async def forgot_password(self, email: str) -> None:
        """Send a password-reset link to *email*."""
        email = self.normalize_email(email)
        if not email:
            raise CredentialsRequiredError("Email address is required.", operation="forgot_password")

        try:
            await self._backend.reset_password_for_email(
                email, redirect_to=self._config.PASSWORD_RESET_REDIRECT_URL,
            )
        except Exception as exc:
            raise classify_backend_error(exc, operation="forgot_password") from exc

        self._audit.emit(
            AuditAction.PASSWORD_RESET_REQUESTED,
            _ENTITY_USER,
            details={"email": email},
        )
        self._logger.info(
            "Password reset requested for %s", email,
            extra={"event": "PASSWORD_RESET_REQUESTED", "email": email},
        )

    async def reset_password(self, new_password: str) -> None:
        """Set a new password for the session opened by the reset link."""
        if not new_password:
            raise CredentialsRequiredError("A new password is required.", operation="reset_password")

        try:
            await self._backend.update_credentials(password=new_password)
        except Exception as exc:
            raise classify_backend_error(exc, operation="reset_password") from exc

        user_id = self._current_user_id()
        self._audit.emit(
            AuditAction.PASSWORD_RESET,
            _ENTITY_USER,
            entity_id=user_id,
            user_id=user_id,
        )
        self._logger.info(
            "Password updated", extra={"event": "PASSWORD_RESET", "user_id": user_id},
        )
