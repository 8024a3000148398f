"""Tests for logout and password reset."""
import asyncio

import pytest

from ams_identity.exceptions import (
    AuthError,
    BackendUnavailableError,
    CredentialsRequiredError,
)
from tests.conftest import ALICE_EMAIL, ALICE_PASSWORD
from tests.helpers.fakes import BackendError


class TestLogout:

    @pytest.mark.asyncio
    async def test_logout_clears_session_and_audits(self, auth_service, backend, alice, audit_sink):
        await auth_service.start()
        await auth_service.login(ALICE_EMAIL, ALICE_PASSWORD)

        await auth_service.logout()
        await auth_service.drain()

        assert auth_service.user is None
        assert backend.session is None
        signed_out = audit_sink.of("auth.sign_out")
        # The backend SIGNED_OUT event arrives after the store is already clear.
        assert len(signed_out) == 1
        assert signed_out[0].user_id == alice.id
        assert signed_out[0].details["remote_sign_out"] is True
        await auth_service.close()

    @pytest.mark.asyncio
    async def test_logout_audits_once_when_backend_event_is_handled_first(
        self, auth_service, backend, alice, audit_sink,
    ):
        await auth_service.start()
        await auth_service.login(ALICE_EMAIL, ALICE_PASSWORD)
        original = backend.sign_out

        async def sign_out_then_yield():
            await original()
            # Let the SIGNED_OUT handler run before logout resumes.
            await asyncio.sleep(0)

        backend.sign_out = sign_out_then_yield

        await auth_service.logout()
        await auth_service.drain()

        assert auth_service.user is None
        signed_out = audit_sink.of("auth.sign_out")
        assert len(signed_out) == 1
        assert signed_out[0].user_id == alice.id
        assert signed_out[0].details["remote_sign_out"] is True
        await auth_service.close()

    @pytest.mark.asyncio
    async def test_logout_clears_session_even_when_backend_fails(
        self, auth_service, backend, alice, audit_sink,
    ):
        await auth_service.login(ALICE_EMAIL, ALICE_PASSWORD)
        backend.sign_out_error = ConnectionError("offline")

        with pytest.raises(BackendUnavailableError):
            await auth_service.logout()
        await auth_service.drain()

        assert auth_service.user is None
        signed_out = audit_sink.of("auth.sign_out")
        assert len(signed_out) == 1
        assert signed_out[0].user_id == alice.id
        assert signed_out[0].details["remote_sign_out"] is False

    @pytest.mark.asyncio
    async def test_logout_when_signed_out(self, auth_service, audit_sink):
        await auth_service.logout()
        await auth_service.drain()

        assert auth_service.user is None
        assert audit_sink.of("auth.sign_out")[0].user_id is None

    @pytest.mark.asyncio
    async def test_listeners_notified_on_logout(self, auth_service):
        await auth_service.login(ALICE_EMAIL, ALICE_PASSWORD)
        seen = []
        auth_service.subscribe(seen.append)

        await auth_service.logout()
        await auth_service.drain()

        assert len(seen) == 1
        assert seen[0].user is None


class TestForgotPassword:

    @pytest.mark.asyncio
    async def test_sends_reset_link_with_redirect(self, auth_service, backend, config, audit_sink):
        await auth_service.forgot_password(" A@X.com ")
        await auth_service.drain()

        assert backend.reset_requests == [(ALICE_EMAIL, config.PASSWORD_RESET_REDIRECT_URL)]
        requested = audit_sink.of("auth.password_reset_requested")
        assert requested[0].details == {"email": ALICE_EMAIL}

    @pytest.mark.asyncio
    async def test_blank_email(self, auth_service, backend):
        with pytest.raises(CredentialsRequiredError):
            await auth_service.forgot_password("  ")
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_backend_failure_is_not_audited(self, auth_service, backend, audit_sink):
        backend.reset_error = BackendError("upstream", status=500)

        with pytest.raises(BackendUnavailableError):
            await auth_service.forgot_password(ALICE_EMAIL)
        await auth_service.drain()

        assert audit_sink.events == []


class TestResetPassword:

    @pytest.mark.asyncio
    async def test_updates_password_and_audits(self, auth_service, backend, alice, audit_sink):
        await auth_service.login(ALICE_EMAIL, ALICE_PASSWORD)

        await auth_service.reset_password("n3w-Passw0rd!")
        await auth_service.drain()

        assert backend.password_updates == ["n3w-Passw0rd!"]
        reset = audit_sink.of("auth.password_reset")
        assert len(reset) == 1
        assert reset[0].user_id == alice.id
        assert "n3w-Passw0rd!" not in str(reset[0].model_dump())

    @pytest.mark.asyncio
    async def test_blank_password(self, auth_service, backend):
        with pytest.raises(CredentialsRequiredError):
            await auth_service.reset_password("")
        assert backend.password_updates == []

    @pytest.mark.asyncio
    async def test_rejected_update(self, auth_service, backend):
        backend.update_error = BackendError("Password should be at least 8 characters", status=422)

        with pytest.raises(AuthError) as excinfo:
            await auth_service.reset_password("short")

        assert excinfo.value.message == "Password should be at least 8 characters"
