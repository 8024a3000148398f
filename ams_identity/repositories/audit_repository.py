"""
Audit Repository.

Append-only sink for ``AuditEvent`` rows in the ``audit_logs`` table.
"""

from __future__ import annotations

from ams_identity.exceptions import AuditWriteError
from ams_identity.repositories.base_repository import BaseRepository
from ams_identity.utils.audit import AuditEvent


class AuditRepository(BaseRepository):
    """Writes audit events.  Rows are write-once."""

    TABLE = "audit_logs"

    async def write(self, event: AuditEvent) -> None:
        """Insert *event*.

        Raises:
            AuditWriteError: If the insert fails for any reason.
        """
        row = {
            "user_id": event.user_id,
            "action": event.action,
            "entity_type": event.entity_type,
            "entity_id": event.entity_id,
            "details": event.details,
            "created_at": event.timestamp,
        }
        try:
            await self.supabase.table(self.table).insert(row).execute()
        except Exception as exc:
            raise AuditWriteError(
                f"Could not write audit event {event.action}: {exc}",
                operation="audit.write",
                original_error=exc,
            ) from exc
