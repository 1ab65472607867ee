"""Audit sink for lifecycle transitions.

Managers build ``AuditEvent`` objects while their transaction is open and hand
them to ``publish`` only after the commit. A sink that fails is logged and
ignored: audit trouble never undoes a business write.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Optional, Protocol

import structlog
from sqlalchemy.orm import Session

import models

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    action: str
    entity_type: str
    entity_id: int
    actor: Optional[models.Actor] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


class AuditSink(Protocol):
    def write(self, db: Session, event: AuditEvent) -> None:
        ...


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class DatabaseAuditSink:
    """Writes each event as an ``activity_logs`` row in its own transaction."""

    def write(self, db: Session, event: AuditEvent) -> None:
        entry = models.ActivityLog(
            actor_id=event.actor.id if event.actor else None,
            actor_role=event.actor.role.value if event.actor else None,
            action=event.action,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            from_status=_jsonable(event.from_status),
            to_status=_jsonable(event.to_status),
            details=_jsonable(event.details) or None,
        )
        try:
            db.add(entry)
            db.commit()
        except Exception:
            db.rollback()
            raise


_default_sink: AuditSink = DatabaseAuditSink()


def get_audit_sink() -> AuditSink:
    return _default_sink


def set_audit_sink(sink: AuditSink) -> AuditSink:
    """Replace the process-wide sink; returns the previous one."""
    global _default_sink
    previous = _default_sink
    _default_sink = sink
    return previous


def publish(db: Session, events: Iterable[AuditEvent], sink: Optional[AuditSink] = None) -> None:
    """Deliver already-committed transitions to the audit sink."""
    sink = sink or get_audit_sink()
    for event in events:
        logger.info(
            "Lifecycle transition",
            action=event.action,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            from_status=_jsonable(event.from_status),
            to_status=_jsonable(event.to_status),
            actor_id=event.actor.id if event.actor else None,
        )
        try:
            sink.write(db, event)
        except Exception:
            logger.exception(
                "Audit sink failed; business transaction kept",
                action=event.action,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
            )
