from collections.abc import Iterator

from fastapi import Header, HTTPException, status
from sqlalchemy.orm import Session

from core.audit import AuditSink, DatabaseAuditSink
from core.config import get_settings
from core.consent_service import ConsentLifecycleService
from core.db import SessionLocal
from models.consent import IDENTIFIER_MAX_LENGTH


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_audit_sink() -> AuditSink:
    return DatabaseAuditSink(SessionLocal)


def build_consent_service(db: Session, audit: AuditSink | None = None) -> ConsentLifecycleService:
    settings = get_settings()
    return ConsentLifecycleService(
        db,
        expiry_days=settings.consent_expiry_days,
        consent_kind=settings.consent_kind,
        managed_scopes=tuple(settings.consent_grant_scopes),
        audit=audit,
    )


def require_actor(x_actor_id: str | None = Header(default=None, max_length=IDENTIFIER_MAX_LENGTH)) -> str:
    # Identity is resolved upstream; this service only needs attribution.
    actor = (x_actor_id or "").strip()
    if not actor:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing actor identity")
    return actor
