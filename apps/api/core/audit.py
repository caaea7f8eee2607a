from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy.orm import Session

from core.logging_utils import log_structured
from core.observability import METRIC_AUDIT_WRITE_FAILED, increment_metric
from models.audit import AuditEvent

ENTITY_CONSENT = "person_consents"
ENTITY_GRANT = "person_access_grants"


@dataclass(frozen=True)
class AuditEventIn:
    actor: str
    action: str
    entity_type: str
    entity_id: str
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def entity_ref(self) -> str:
        return f"{self.entity_type}:{self.entity_id}"


class AuditSink(Protocol):
    def record(self, event: AuditEventIn) -> None: ...


class DatabaseAuditSink:
    """Writes audit events through a dedicated session, one commit per event."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def record(self, event: AuditEventIn) -> None:
        db = self.session_factory()
        try:
            db.add(
                AuditEvent(
                    actor=event.actor,
                    action=event.action,
                    entity_type=event.entity_type,
                    entity_ref=event.entity_ref,
                    meta=event.meta,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class NullAuditSink:
    def record(self, event: AuditEventIn) -> None:
        log_structured("audit.discarded", action=event.action, level=logging.DEBUG)


def emit_audit_events(sink: AuditSink, events: Iterable[AuditEventIn]) -> int:
    """Best-effort delivery; returns the number of events that failed."""
    failures = 0
    for event in events:
        try:
            sink.record(event)
        except Exception as exc:
            failures += 1
            increment_metric(METRIC_AUDIT_WRITE_FAILED, reason=event.action)
            log_structured(
                "audit.write_failed",
                level=logging.WARNING,
                action=event.action,
                error_class=exc.__class__.__name__,
            )
    return failures
