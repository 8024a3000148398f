"""
Identity Backend Client.

``IdentityBackend`` and ``MfaBackend`` describe the operations the core
consumes from the identity provider.  Return values are raw payloads;
``ams_identity.utils.payloads`` interprets them.

``SupabaseIdentityBackend`` implements the protocols on top of
``supabase`` ``AsyncClient.auth``.  Supabase keeps issuing a session when
the password is accepted for a user with a verified factor; that session
only carries assurance level ``aal1``.  The adapter reports it as "no
session, step-up required" and hides it from ``get_session`` and from
session-change notifications, so the core sees a session only once the
second factor is verified.
"""

from __future__ import annotations

from typing import Any, Callable, Optional, Protocol, runtime_checkable

from jose import JWTError, jwt
from supabase import AsyncClient

from ams_identity.logger import StructuredLogger
from ams_identity.models.auth_models import SessionEvent
from ams_identity.models.enums import SessionEventType
from ams_identity.utils.payloads import normalize_session_event

SessionEventHandler = Callable[[SessionEvent], None]


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

@runtime_checkable
class MfaBackend(Protocol):
    """Second-factor operations of the identity backend.

    Backends may additionally expose ``verify_factor(factor_id, code)``;
    enrollment verification prefers it over the legacy ``verify`` form.
    """

    async def challenge(self, factor_id: str) -> Any: ...  # noqa: E704

    async def verify(
        self, factor_id: str, code: str, challenge_id: Optional[str] = None,
    ) -> Any: ...  # noqa: E704

    async def enroll(self, *, factor_type: str, friendly_name: str) -> Any: ...  # noqa: E704

    async def unenroll(self, factor_id: str) -> Any: ...  # noqa: E704

    async def list_factors(self) -> Any: ...  # noqa: E704


@runtime_checkable
class IdentityBackend(Protocol):
    """Credential, session and MFA operations of the identity backend."""

    @property
    def mfa(self) -> MfaBackend: ...  # noqa: E704

    async def get_session(self) -> Any: ...  # noqa: E704

    async def sign_in_with_password(self, email: str, password: str) -> Any: ...  # noqa: E704

    async def sign_out(self) -> None: ...  # noqa: E704

    def on_session_change(self, handler: SessionEventHandler) -> Callable[[], None]: ...  # noqa: E704

    async def reset_password_for_email(self, email: str, *, redirect_to: str) -> None: ...  # noqa: E704

    async def update_credentials(self, *, password: str) -> None: ...  # noqa: E704


# ---------------------------------------------------------------------------
# Supabase implementation
# ---------------------------------------------------------------------------

def _field(payload: Any, name: str) -> Any:
    if isinstance(payload, dict):
        return payload.get(name)
    return getattr(payload, name, None)


def _verified_factors(user: Any) -> list[Any]:
    return [
        factor for factor in (_field(user, "factors") or [])
        if str(_field(factor, "status") or "").lower() == "verified"
    ]


def requires_step_up(session: Any) -> bool:
    """``True`` when *session* is password-only but the user has a verified factor."""
    if session is None or not _verified_factors(_field(session, "user")):
        return False
    token = _field(session, "access_token")
    if not token:
        return True
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return True
    return claims.get("aal") != "aal2"


class SupabaseMfaBackend:
    """``MfaBackend`` over ``AsyncClient.auth.mfa``."""

    def __init__(self, client: AsyncClient) -> None:
        self._client = client

    @property
    def _api(self) -> Any:
        return self._client.auth.mfa

    async def challenge(self, factor_id: str) -> Any:
        return await self._api.challenge({"factor_id": factor_id})

    async def verify(
        self, factor_id: str, code: str, challenge_id: Optional[str] = None,
    ) -> Any:
        if challenge_id is None:
            challenge = await self.challenge(factor_id)
            challenge_id = _field(challenge, "id")
        return await self._api.verify(
            {"factor_id": factor_id, "challenge_id": challenge_id, "code": code},
        )

    async def verify_factor(self, factor_id: str, code: str) -> Any:
        return await self._api.challenge_and_verify({"factor_id": factor_id, "code": code})

    async def enroll(self, *, factor_type: str, friendly_name: str) -> Any:
        return await self._api.enroll(
            {"factor_type": factor_type, "friendly_name": friendly_name},
        )

    async def unenroll(self, factor_id: str) -> Any:
        return await self._api.unenroll({"factor_id": factor_id})

    async def list_factors(self) -> Any:
        return await self._api.list_factors()


class SupabaseIdentityBackend:
    """``IdentityBackend`` over a Supabase ``AsyncClient``.

    Parameters
    ----------
    client:
        Connected ``AsyncClient``.
    logger:
        Structured JSON logger.
    """

    def __init__(self, client: AsyncClient, logger: StructuredLogger) -> None:
        self._client: AsyncClient = client
        self._logger: StructuredLogger = logger
        self._mfa: SupabaseMfaBackend = SupabaseMfaBackend(client)

    @property
    def mfa(self) -> SupabaseMfaBackend:
        return self._mfa

    async def get_session(self) -> Any:
        session = await self._client.auth.get_session()
        if requires_step_up(session):
            return None
        return session

    async def sign_in_with_password(self, email: str, password: str) -> dict[str, Any]:
        response = await self._client.auth.sign_in_with_password(
            {"email": email, "password": password},
        )
        session = response.session
        if requires_step_up(session):
            return {
                "session": None,
                "user": response.user,
                "factors": _verified_factors(_field(session, "user")),
            }
        return {"session": session, "user": response.user, "factors": []}

    async def sign_out(self) -> None:
        await self._client.auth.sign_out()

    def on_session_change(self, handler: SessionEventHandler) -> Callable[[], None]:
        """Forward normalised auth-state changes to *handler*.

        Returns:
            The subscription's ``unsubscribe`` callable.
        """

        def _callback(event: Any, session: Any) -> None:
            normalized = normalize_session_event(event, session)
            if normalized is None:
                self._logger.debug("Ignoring auth event %s.", event)
                return
            if normalized.kind != SessionEventType.SIGNED_OUT and requires_step_up(session):
                self._logger.debug("Holding %s until MFA step-up completes.", event)
                return
            handler(normalized)

        subscription = self._client.auth.on_auth_state_change(_callback)
        return subscription.unsubscribe

    async def reset_password_for_email(self, email: str, *, redirect_to: str) -> None:
        await self._client.auth.reset_password_for_email(
            email, {"redirect_to": redirect_to},
        )

    async def update_credentials(self, *, password: str) -> None:
        await self._client.auth.update_user({"password": password})
