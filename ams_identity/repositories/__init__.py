"""
Repository Layer Package.

Data-access abstractions over the Supabase directory tables.  Services
never access the Supabase client directly.

Usage:
    from ams_identity.repositories.user_repository import UserRepository
    from ams_identity.repositories.audit_repository import AuditRepository
"""

from ams_identity.repositories.audit_repository import AuditRepository
from ams_identity.repositories.base_repository import BaseRepository
from ams_identity.repositories.user_repository import UserRepository

__all__ = [
    "AuditRepository",
    "BaseRepository",
    "UserRepository",
]
