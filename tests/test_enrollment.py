"""Tests for TOTP enrollment, factor listing and disabling."""
import pytest

from ams_identity.exceptions import (
    BackendUnavailableError,
    EnrollmentExpiredError,
    FactorAlreadyExistsError,
    FactorIdMissingError,
    FactorNotFoundError,
    InvalidTransitionError,
    MfaCodeRejectedError,
)
from ams_identity.models.enums import EnrollmentStatus, FactorStatus
from ams_identity.services.auth_service import AuthService
from ams_identity.services.enrollment import TotpEnrollmentController
from tests.conftest import ALICE_EMAIL, ALICE_PASSWORD
from tests.helpers.fakes import BackendError, FakeIdentityBackend, LegacyMfaBackend


async def _signed_in(auth_service):
    await auth_service.login(ALICE_EMAIL, ALICE_PASSWORD)
    await auth_service.drain()


class TestStartEnroll:

    @pytest.mark.asyncio
    async def test_returns_qr_and_uri(self, auth_service, mfa_backend, audit_sink, alice):
        await _signed_in(auth_service)

        ticket = await auth_service.start_enroll_totp()
        await auth_service.drain()

        assert ticket.factor_id in mfa_backend.factors
        assert ticket.qr_code.startswith("data:image/svg+xml")
        assert ticket.otpauth_url.startswith("otpauth://totp/")
        assert ticket.display_payload == ticket.qr_code
        started = audit_sink.of("auth.mfa_enroll_start")
        assert len(started) == 1
        assert started[0].entity_id == ticket.factor_id
        assert started[0].user_id == alice.id

    @pytest.mark.asyncio
    async def test_uri_only_response(self, auth_service, mfa_backend):
        mfa_backend.enroll_response = {"factorId": "f1", "otpauthUri": "otpauth://totp/AMS:a@x.com"}

        ticket = await auth_service.start_enroll_totp()
        await auth_service.drain()

        assert ticket.factor_id == "f1"
        assert ticket.otpauth_url == "otpauth://totp/AMS:a@x.com"
        assert ticket.qr_code is None
        assert ticket.display_payload == ticket.otpauth_url

    @pytest.mark.asyncio
    async def test_friendly_names_are_unique_and_prefixed(self, auth_service, mfa_backend):
        await auth_service.start_enroll_totp()
        await auth_service.start_enroll_totp()
        await auth_service.drain()

        names = [c[2] for c in mfa_backend.calls if c[0] == "enroll"]
        assert len(set(names)) == 2
        assert all(name.startswith("TOTP ") for name in names)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        BackendError("A factor with the friendly name already exists", status=422),
        BackendError("conflict", code="mfa_factor_name_conflict", status=422),
    ])
    async def test_existing_factor(self, auth_service, mfa_backend, audit_sink, error):
        mfa_backend.enroll_error = error

        with pytest.raises(FactorAlreadyExistsError) as excinfo:
            await auth_service.start_enroll_totp()
        await auth_service.drain()

        assert "disable the existing factor first" in excinfo.value.message
        assert excinfo.value.retryable is True
        assert audit_sink.actions() == ["auth.mfa_enroll_start_failed"]

    @pytest.mark.asyncio
    async def test_missing_factor_id(self, auth_service, mfa_backend, audit_sink):
        mfa_backend.enroll_response = {"totp": {"qr_code": "data:image/svg+xml,<svg/>"}}

        with pytest.raises(FactorIdMissingError):
            await auth_service.start_enroll_totp()
        await auth_service.drain()

        assert audit_sink.actions() == ["auth.mfa_enroll_start_failed"]


class TestVerifyEnroll:

    @pytest.mark.asyncio
    async def test_round_trip_marks_factor_verified(self, auth_service, audit_sink):
        ticket = await auth_service.start_enroll_totp()

        await auth_service.verify_enroll_totp(ticket.factor_id, "123 456")
        factors = await auth_service.list_mfa_factors()
        await auth_service.drain()

        match = [f for f in factors if f.id == ticket.factor_id]
        assert match and match[0].status == FactorStatus.VERIFIED
        assert audit_sink.actions() == ["auth.mfa_enroll_start", "auth.mfa_enroll_verify"]

    @pytest.mark.asyncio
    async def test_prefers_combined_verification(self, auth_service, mfa_backend):
        ticket = await auth_service.start_enroll_totp()

        await auth_service.verify_enroll_totp(ticket.factor_id, "123456")

        assert ("verify_factor", ticket.factor_id, "123456") in mfa_backend.calls
        assert not [c for c in mfa_backend.calls if c[0] == "verify"]

    @pytest.mark.asyncio
    async def test_legacy_client_falls_back_to_verify(
        self, profiles, emitter, store, config, logger,
    ):
        legacy = LegacyMfaBackend()
        service = AuthService(
            backend=FakeIdentityBackend(legacy),
            profiles=profiles,
            audit=emitter,
            store=store,
            config=config,
            logger=logger,
        )
        ticket = await service.start_enroll_totp()

        await service.verify_enroll_totp(ticket.factor_id, "123456")
        await service.drain()

        assert ("verify", ticket.factor_id, "123456", None) in legacy.calls
        assert legacy.factors[ticket.factor_id]["status"] == "verified"

    @pytest.mark.asyncio
    async def test_wrong_code_keeps_backend_message(self, auth_service, audit_sink):
        ticket = await auth_service.start_enroll_totp()

        with pytest.raises(MfaCodeRejectedError) as excinfo:
            await auth_service.verify_enroll_totp(ticket.factor_id, "000000")
        await auth_service.drain()

        assert excinfo.value.message == "Invalid TOTP code entered"
        assert len(audit_sink.of("auth.mfa_enroll_verify_failed")) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        BackendError("Challenge has expired, verify against another challenge", status=422),
        BackendError("expired", code="mfa_challenge_expired", status=422),
    ])
    async def test_stale_challenge_asks_for_restart(self, auth_service, mfa_backend, error):
        ticket = await auth_service.start_enroll_totp()
        mfa_backend.verify_error = error

        with pytest.raises(EnrollmentExpiredError) as excinfo:
            await auth_service.verify_enroll_totp(ticket.factor_id, "123456")
        await auth_service.drain()

        assert "start a new enrollment" in excinfo.value.message
        assert excinfo.value.retryable is True

    @pytest.mark.asyncio
    async def test_missing_factor_during_verify_is_reported_as_not_found(
        self, auth_service, mfa_backend, audit_sink,
    ):
        ticket = await auth_service.start_enroll_totp()
        mfa_backend.verify_error = BackendError(
            "Factor not found", code="mfa_factor_not_found", status=404,
        )

        with pytest.raises(FactorNotFoundError) as excinfo:
            await auth_service.verify_enroll_totp(ticket.factor_id, "123456")
        await auth_service.drain()

        assert excinfo.value.factor_id == ticket.factor_id
        assert len(audit_sink.of("auth.mfa_enroll_verify_failed")) == 1

    @pytest.mark.asyncio
    async def test_outage_during_verify(self, auth_service, mfa_backend):
        ticket = await auth_service.start_enroll_totp()
        mfa_backend.verify_error = ConnectionError("reset by peer")

        with pytest.raises(BackendUnavailableError):
            await auth_service.verify_enroll_totp(ticket.factor_id, "123456")
        await auth_service.drain()


class TestFactorManagement:

    @pytest.mark.asyncio
    async def test_listing_is_idempotent(self, auth_service, mfa_backend):
        mfa_backend.add_factor("f-a")
        mfa_backend.add_factor("f-b", status="unverified")

        first = await auth_service.list_mfa_factors()
        second = await auth_service.list_mfa_factors()

        assert {f.id for f in first} == {f.id for f in second} == {"f-a", "f-b"}

    @pytest.mark.asyncio
    async def test_disable_one(self, auth_service, mfa_backend, audit_sink):
        mfa_backend.add_factor("f-a")

        await auth_service.disable_totp("f-a")
        await auth_service.drain()

        assert "f-a" not in mfa_backend.factors
        assert audit_sink.actions() == ["auth.mfa_disable"]

    @pytest.mark.asyncio
    async def test_disable_unknown_factor(self, auth_service, audit_sink):
        with pytest.raises(FactorNotFoundError):
            await auth_service.disable_totp("f-missing")
        await auth_service.drain()

        assert audit_sink.actions() == ["auth.mfa_disable_failed"]

    @pytest.mark.asyncio
    async def test_disable_all_retries_failed_removals(self, auth_service, mfa_backend, audit_sink):
        mfa_backend.add_factor("f-a")
        mfa_backend.add_factor("f-b")
        mfa_backend.unenroll_failures["f-b"] = [BackendError("temporarily locked", status=409)]

        result = await auth_service.disable_all_totp()
        await auth_service.drain()

        assert result.complete
        assert result.failures == {}
        assert [f for f in await auth_service.list_mfa_factors() if f.is_totp] == []
        assert audit_sink.actions().count("auth.mfa_disable_failed") == 1

    @pytest.mark.asyncio
    async def test_disable_all_reports_persistent_failures(self, auth_service, mfa_backend):
        mfa_backend.add_factor("f-a")
        mfa_backend.add_factor("f-stuck")
        mfa_backend.unenroll_failures["f-stuck"] = [
            BackendError("locked", status=409) for _ in range(5)
        ]

        result = await auth_service.disable_all_totp()
        await auth_service.drain()

        assert not result.complete
        assert [f.id for f in result.remaining] == ["f-stuck"]
        assert result.failures == {"f-stuck": "locked"}

    @pytest.mark.asyncio
    async def test_disable_all_with_nothing_enrolled(self, auth_service, audit_sink):
        result = await auth_service.disable_all_totp()
        await auth_service.drain()

        assert result.complete
        assert audit_sink.events == []


class TestEnrollmentController:

    @pytest.mark.asyncio
    async def test_happy_path(self, controller, auth_service):
        await _signed_in(auth_service)
        assert controller.status == EnrollmentStatus.IDLE

        ticket = await controller.start()
        assert controller.status == EnrollmentStatus.ENROLLING
        assert controller.session.qr_code == ticket.qr_code

        factors = await controller.verify("123456")
        await auth_service.drain()

        assert controller.status == EnrollmentStatus.ENABLED
        assert controller.session.qr_code is None
        assert controller.session.code == ""
        assert any(f.id == ticket.factor_id and f.is_verified for f in factors)

    @pytest.mark.asyncio
    async def test_rejected_code_returns_to_enrolling(self, controller, auth_service):
        ticket = await controller.start()

        with pytest.raises(MfaCodeRejectedError):
            await controller.verify("000000")
        await auth_service.drain()

        assert controller.status == EnrollmentStatus.ENROLLING
        assert controller.session.factor_id == ticket.factor_id
        assert controller.session.code == ""
        assert controller.error == "Invalid TOTP code entered"

    @pytest.mark.asyncio
    async def test_restart_while_enrolling(self, controller, auth_service):
        first = await controller.start()
        second = await controller.start()
        await auth_service.drain()

        assert controller.status == EnrollmentStatus.ENROLLING
        assert controller.session.factor_id == second.factor_id != first.factor_id

    @pytest.mark.asyncio
    async def test_failed_start_returns_to_idle(self, controller, auth_service, mfa_backend):
        mfa_backend.enroll_error = BackendError("already exists", status=422)

        with pytest.raises(FactorAlreadyExistsError):
            await controller.start()
        await auth_service.drain()

        assert controller.status == EnrollmentStatus.IDLE
        assert "disable the existing factor first" in controller.error

    @pytest.mark.asyncio
    async def test_verify_without_enrollment_is_illegal(self, controller):
        with pytest.raises(InvalidTransitionError):
            await controller.verify("123456")

    @pytest.mark.asyncio
    async def test_enabled_cannot_start_again(self, controller, auth_service, mfa_backend):
        mfa_backend.add_factor("f-a")
        await controller.refresh()
        assert controller.status == EnrollmentStatus.ENABLED

        with pytest.raises(InvalidTransitionError):
            await controller.start()

    @pytest.mark.asyncio
    async def test_cancel_removes_pending_factor(self, controller, auth_service, mfa_backend):
        ticket = await controller.start()

        await controller.cancel()
        await auth_service.drain()

        assert controller.status == EnrollmentStatus.IDLE
        assert controller.session.factor_id is None
        assert ticket.factor_id not in mfa_backend.factors

    @pytest.mark.asyncio
    async def test_disable_returns_to_idle(self, controller, auth_service, mfa_backend):
        mfa_backend.add_factor("f-a")
        await controller.refresh()

        await controller.disable()
        await auth_service.drain()

        assert controller.status == EnrollmentStatus.IDLE
        assert controller.factors == []

    @pytest.mark.asyncio
    async def test_disable_with_nothing_to_remove(self, controller):
        with pytest.raises(FactorNotFoundError):
            await controller.disable()

    @pytest.mark.asyncio
    async def test_disable_all_settles_state(self, controller, auth_service, mfa_backend):
        mfa_backend.add_factor("f-a")
        mfa_backend.add_factor("f-b")
        await controller.refresh()

        result = await controller.disable_all()
        await auth_service.drain()

        assert result.complete
        assert controller.status == EnrollmentStatus.IDLE
        assert controller.error is None

    @pytest.mark.asyncio
    async def test_disable_all_partial_failure_stays_enabled(self, controller, auth_service, mfa_backend):
        mfa_backend.add_factor("f-stuck")
        mfa_backend.unenroll_failures["f-stuck"] = [BackendError("locked", status=409) for _ in range(5)]
        await controller.refresh()

        result = await controller.disable_all()
        await auth_service.drain()

        assert not result.complete
        assert controller.status == EnrollmentStatus.ENABLED
        assert "f-stuck" in controller.error

    def test_set_code_requires_enrollment(self, auth_service, logger):
        controller = TotpEnrollmentController(auth_service, logger)
        with pytest.raises(InvalidTransitionError):
            controller.set_code("123456")
