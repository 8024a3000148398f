"""
Structured Audit Logging Utility.

Every security-relevant transition is recorded as a schema-validated
``AuditEvent``: once as a structured JSON log line, and once in the audit
sink (the ``audit_logs`` table).  Writing to the sink is fire-and-forget;
a failed write is logged and discarded here, never surfaced to the
operation that triggered it.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Optional, Protocol, Union

from pydantic import BaseModel, Field

from ams_identity.logger import StructuredLogger

__all__ = ["AuditEmitter", "AuditEvent", "AuditSink", "DetailValue"]

# ---------------------------------------------------------------------------
# Scalar type permitted inside the ``details`` mapping.  Kept deliberately
# flat -- nested structures should be modelled explicitly, not smuggled
# through the audit log.
# ---------------------------------------------------------------------------
DetailValue = Union[str, int, float, bool, None]


class AuditEvent(BaseModel):
    """Schema-validated representation of a single audit trail entry.

    ``user_id`` is ``None`` for events recorded before a user is known
    (failed sign-ins, enrollment from a partially restored session).
    """

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
    )
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    user_id: Optional[str] = None
    details: dict[str, DetailValue] = Field(default_factory=dict)


class AuditSink(Protocol):
    """Append-only destination for audit events."""

    async def write(self, event: AuditEvent) -> None: ...  # noqa: E704


class AuditEmitter:
    """Best-effort, non-blocking recorder of audit events.

    ``emit`` validates the event, logs it, and schedules the sink write as
    a detached task on the running loop.  The caller never awaits the
    write.  Task references are held until completion so pending writes
    are not garbage-collected; ``drain`` waits for all of them.

    Parameters
    ----------
    sink:
        Destination that persists events.
    logger:
        Structured JSON logger receiving the ``AUDIT:`` lines.
    """

    def __init__(self, sink: AuditSink, logger: StructuredLogger) -> None:
        self._sink: AuditSink = sink
        self._logger: StructuredLogger = logger
        self._pending: set[asyncio.Task[None]] = set()

    def emit(
        self,
        action: str,
        entity_type: str,
        entity_id: Optional[str] = None,
        user_id: Optional[str] = None,
        details: Optional[dict[str, DetailValue]] = None,
    ) -> AuditEvent:
        """Record an audit event without waiting for persistence.

        Args:
            action: Namespaced action tag (e.g. ``"auth.sign_in"``).
            entity_type: Type of entity affected (``"user"``, ``"mfa_factor"``).
            entity_id: Identifier of the affected entity, if known.
            user_id: ID of the acting user, if known.
            details: Flat additional context.

        Returns:
            The validated event that was scheduled.
        """
        event = AuditEvent(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=user_id,
            details=details or {},
        )
        self._logger.info("AUDIT: %s", json.dumps(event.model_dump(), default=str))

        task = asyncio.get_running_loop().create_task(self._write(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return event

    async def _write(self, event: AuditEvent) -> None:
        # Single point where audit failures are discarded.
        try:
            await self._sink.write(event)
        except Exception as exc:
            self._logger.warning(
                "Failed to persist audit event %s: %s",
                event.action,
                exc,
                extra={"event": "AUDIT_WRITE_FAILED", "action": event.action},
            )

    @property
    def pending(self) -> int:
        """Number of writes not yet completed."""
        return len(self._pending)

    async def drain(self) -> None:
        """Wait until every scheduled write has completed."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
