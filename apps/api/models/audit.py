import uuid

from sqlalchemy import JSON, Column, DateTime, String, func, text
from sqlalchemy.dialects.postgresql import UUID

from core.db import Base


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    action = Column(String(64), nullable=False, index=True)
    actor = Column(String(128), nullable=False, default="system", server_default=text("'system'"))
    entity_type = Column(String(64), nullable=False)
    entity_ref = Column(String(256), nullable=False, index=True)
    meta = Column(JSON, nullable=False, default=dict)
    at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
