"""
Audit Emitter - receives access decisions and grant mutations.

The emitter is an external collaborator: the core calls it fire-and-forget
and never lets an emitter failure affect a decision or a committed mutation.

Implementations:
- NullAuditEmitter: drops everything
- LoggingAuditEmitter: structured log lines on the ``access_control.audit`` logger
- InMemoryAuditEmitter: keeps events in a list (tests, admin replays)
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol
from uuid import UUID

from .models import RelationKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    """One emitted event."""
    event_type: str
    occurred_at: datetime
    data: Dict[str, Any] = field(default_factory=dict)


class AuditEmitter(Protocol):
    """Sink for decisions and mutations."""

    def emit_decision(
        self,
        decision: Any,
        subject_id: UUID,
        target_id: UUID,
        relation: RelationKind,
        now: datetime,
    ) -> None:
        ...

    def emit_mutation(
        self,
        action: str,
        now: datetime,
        actor_id: Optional[UUID] = None,
        **details: Any,
    ) -> None:
        ...


class NullAuditEmitter:
    """Discards every event."""

    def emit_decision(self, decision, subject_id, target_id, relation, now) -> None:
        return None

    def emit_mutation(self, action, now, actor_id=None, **details) -> None:
        return None


class LoggingAuditEmitter:
    """Writes events as structured log records."""

    def __init__(self, logger_name: str = "access_control.audit"):
        self._logger = logging.getLogger(logger_name)

    def emit_decision(self, decision, subject_id, target_id, relation, now) -> None:
        self._logger.info(
            "access_decision",
            extra={"extra_data": {
                "subject_id": str(subject_id),
                "target_id": str(target_id),
                "relation": RelationKind(relation).value,
                "evaluated_at": now.isoformat(),
                **decision.to_dict(),
            }},
        )

    def emit_mutation(self, action, now, actor_id=None, **details) -> None:
        self._logger.info(
            "access_mutation",
            extra={"extra_data": {
                "action": action,
                "occurred_at": now.isoformat(),
                "actor_id": str(actor_id) if actor_id else None,
                **{k: str(v) if isinstance(v, UUID) else v for k, v in details.items()},
            }},
        )


class InMemoryAuditEmitter:
    """Thread-safe in-memory event list."""

    def __init__(self):
        self.events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def emit_decision(self, decision, subject_id, target_id, relation, now) -> None:
        with self._lock:
            self.events.append(AuditEvent(
                event_type="decision",
                occurred_at=now,
                data={
                    "decision": decision,
                    "subject_id": subject_id,
                    "target_id": target_id,
                    "relation": relation,
                },
            ))

    def emit_mutation(self, action, now, actor_id=None, **details) -> None:
        with self._lock:
            self.events.append(AuditEvent(
                event_type=action,
                occurred_at=now,
                data={"actor_id": actor_id, **details},
            ))

    def of_type(self, event_type: str) -> List[AuditEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()


def safe_emit(method, *args, **kwargs) -> None:
    """Call an emitter method; failures are logged and dropped."""
    try:
        method(*args, **kwargs)
    except Exception:
        logger.warning("Audit emitter failed", exc_info=True)
