"""Shared pytest fixtures for the identity core tests."""
import os

import pytest

# ---------------------------------------------------------------------------
# Deterministic test environment, set BEFORE any ams_identity module
# imports.  No log file is written and no backend is configured.
# ---------------------------------------------------------------------------
os.environ.setdefault("LOG_FILE", "")
os.environ.setdefault("SUPABASE_URL", "")
os.environ.setdefault("SUPABASE_ANON_KEY", "")

from ams_identity.auth import SessionStore  # noqa: E402
from ams_identity.config import AppConfig  # noqa: E402
from ams_identity.logger import StructuredLogger  # noqa: E402
from ams_identity.models.user import UserProfile  # noqa: E402
from ams_identity.services.auth_service import AuthService  # noqa: E402
from ams_identity.services.enrollment import TotpEnrollmentController  # noqa: E402
from ams_identity.utils.audit import AuditEmitter  # noqa: E402
from tests.helpers.fakes import (  # noqa: E402
    FakeAuditSink,
    FakeIdentityBackend,
    FakeMfaBackend,
    FakeProfileResolver,
)

ALICE_EMAIL = "a@x.com"
ALICE_PASSWORD = "correct-horse"


@pytest.fixture
def config():
    return AppConfig(
        LOG_FILE="",
        PASSWORD_RESET_REDIRECT_URL="https://ams.example.com/reset-password",
        MFA_BULK_DISABLE_ATTEMPTS=2,
    )


@pytest.fixture
def logger():
    return StructuredLogger(name="ams_identity.tests", log_file="")


@pytest.fixture
def mfa_backend():
    return FakeMfaBackend()


@pytest.fixture
def backend(mfa_backend):
    fake = FakeIdentityBackend(mfa_backend)
    fake.add_account(ALICE_EMAIL, ALICE_PASSWORD, principal_id="p-alice")
    return fake


@pytest.fixture
def alice():
    return UserProfile(id="u-alice", name="Alice Ames", email=ALICE_EMAIL, role="admin")


@pytest.fixture
def profiles(alice):
    resolver = FakeProfileResolver()
    resolver.add(alice)
    return resolver


@pytest.fixture
def audit_sink():
    return FakeAuditSink()


@pytest.fixture
def store(logger):
    return SessionStore(logger)


@pytest.fixture
def emitter(audit_sink, logger):
    return AuditEmitter(audit_sink, logger)


@pytest.fixture
def auth_service(backend, profiles, emitter, store, config, logger):
    return AuthService(
        backend=backend,
        profiles=profiles,
        audit=emitter,
        store=store,
        config=config,
        logger=logger,
    )


@pytest.fixture
def controller(auth_service, logger):
    return TotpEnrollmentController(auth_service, logger)
