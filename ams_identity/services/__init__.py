"""
Business Logic Services Package.

The ``create_services()`` factory wires the repositories, the backend
adapter and the services together, returning a typed dict that the
application layer can consume without knowing the internal dependency
graph.
"""

from __future__ import annotations

from typing import Optional, TypedDict

from ams_identity.auth import SessionStore
from ams_identity.backend import SupabaseIdentityBackend
from ams_identity.config import AppConfig
from ams_identity.database import SupabaseConnection
from ams_identity.logger import get_logger
from ams_identity.repositories.audit_repository import AuditRepository
from ams_identity.repositories.user_repository import UserRepository
from ams_identity.services.auth_service import AuthService, ProfileResolver
from ams_identity.services.base_service import BaseService
from ams_identity.services.enrollment import TotpEnrollmentController
from ams_identity.utils.audit import AuditEmitter

__all__ = [
    "AuthService",
    "BaseService",
    "ProfileResolver",
    "ServiceContainer",
    "TotpEnrollmentController",
    "create_services",
]


class ServiceContainer(TypedDict):
    """Typed container for the identity core."""

    session_store: SessionStore
    user_repository: UserRepository
    audit_repository: AuditRepository
    audit_emitter: AuditEmitter
    identity_backend: SupabaseIdentityBackend
    auth_service: AuthService


def create_services(
    connection: SupabaseConnection,
    config: AppConfig,
    store: Optional[SessionStore] = None,
) -> ServiceContainer:
    """
    Wire all repositories and services together.

    *connection* must already be connected.  Pass *store* to share an
    existing ``SessionStore``; otherwise a new one is created.

    Raises:
        BackendNotConfiguredError: The connection holds no client.
    """
    session_store = store if store is not None else SessionStore(get_logger("session"))

    user_repository = UserRepository(
        connection, get_logger("user_repository"), table=config.PROFILES_TABLE,
    )
    audit_repository = AuditRepository(
        connection, get_logger("audit_repository"), table=config.AUDIT_TABLE,
    )
    audit_emitter = AuditEmitter(audit_repository, get_logger("audit"))
    identity_backend = SupabaseIdentityBackend(connection.client, get_logger("identity_backend"))

    auth_service = AuthService(
        backend=identity_backend,
        profiles=user_repository,
        audit=audit_emitter,
        store=session_store,
        config=config,
        logger=get_logger("auth_service"),
    )

    return ServiceContainer(
        session_store=session_store,
        user_repository=user_repository,
        audit_repository=audit_repository,
        audit_emitter=audit_emitter,
        identity_backend=identity_backend,
        auth_service=auth_service,
    )
