import uuid

from sqlalchemy import DateTime, Index, Integer, String, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base


class AccessGrant(Base):
    __tablename__ = "person_access_grants"
    __table_args__ = (
        Index(
            "uq_person_access_grants_active_org_scope",
            "subject_id",
            "scope",
            "grantee_org_id",
            unique=True,
            postgresql_where=text("revoked_at IS NULL AND grantee_org_id IS NOT NULL"),
            sqlite_where=text("revoked_at IS NULL AND grantee_org_id IS NOT NULL"),
        ),
        Index("ix_person_access_grants_subject_scope", "subject_id", "scope"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subject_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    scope: Mapped[str] = mapped_column(String(64), nullable=False)
    grantee_org_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    grantee_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    granted_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    granted_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    revoked_at: Mapped["DateTime | None"] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None
