"""
Unit of Work

Everything one engine operation needs while its transaction is open: the
session, the acting staff member, a single "now", the audit sink and the
events to publish once the transaction commits.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.config import Settings
from orderflow.core.timeutils import utcnow
from orderflow.models import AuditLog
from orderflow.services.broadcast.base import EngineEvent


@dataclass
class UnitOfWork:
    session: AsyncSession
    settings: Settings
    staff_id: Optional[int] = None
    now: datetime = field(default_factory=utcnow)
    events: list[EngineEvent] = field(default_factory=list)

    def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        """Queue an event; it is published only if the transaction commits."""
        self.events.append(EngineEvent(event_type=event_type, payload=payload, occurred_at=self.now))

    def audit(
        self,
        action_type: str,
        entity_type: str,
        entity_id: Optional[int],
        details: Optional[dict[str, Any]] = None,
        staff_id: Optional[int] = None,
    ) -> AuditLog:
        """Write an audit row inside the current transaction."""
        entry = AuditLog(
            action_type=action_type,
            entity_type=entity_type,
            entity_id=entity_id,
            staff_id=staff_id if staff_id is not None else self.staff_id,
            details=details or {},
            created_at=self.now,
        )
        self.session.add(entry)
        return entry
