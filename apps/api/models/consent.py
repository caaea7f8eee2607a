import enum
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from core.db import Base

IDENTIFIER_MAX_LENGTH = 128
LABEL_MAX_LENGTH = 64


class ConsentStatus(str, enum.Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


class ConsentScopeValue(str, enum.Enum):
    NONE = "none"
    ALL_ORGS = "all_orgs"
    SELECTED_ORGS = "selected_orgs"


def _enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        values_callable=lambda x: [e.value for e in x],
    )


class ConsentRecord(Base):
    __tablename__ = "person_consents"
    __table_args__ = (
        Index(
            "uq_person_consents_one_active",
            "subject_id",
            "consent_kind",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("ix_person_consents_subject_kind_created", "subject_id", "consent_kind", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subject_id: Mapped[str] = mapped_column(String(IDENTIFIER_MAX_LENGTH), index=True, nullable=False)
    consent_kind: Mapped[str] = mapped_column(String(64), nullable=False)
    scope: Mapped[ConsentScopeValue] = mapped_column(_enum_column(ConsentScopeValue, "consentscope"), nullable=False)
    status: Mapped[ConsentStatus] = mapped_column(
        _enum_column(ConsentStatus, "consentstatus"),
        nullable=False,
        default=ConsentStatus.ACTIVE,
    )
    captured_by: Mapped[str | None] = mapped_column(String(IDENTIFIER_MAX_LENGTH), nullable=True)
    captured_method: Mapped[str] = mapped_column(String(LABEL_MAX_LENGTH), nullable=False)
    policy_version: Mapped[str | None] = mapped_column(String(LABEL_MAX_LENGTH), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    restrictions: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    revoked_at: Mapped["DateTime | None"] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(String(IDENTIFIER_MAX_LENGTH), nullable=True)
    expires_at: Mapped["DateTime | None"] = mapped_column(DateTime(timezone=True), nullable=True)


class ConsentOrgOverride(Base):
    __tablename__ = "person_consent_orgs"
    __table_args__ = (
        UniqueConstraint("consent_id", "organization_id", name="uq_person_consent_orgs_consent_org"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    consent_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("person_consents.id", ondelete="RESTRICT"),
        index=True,
        nullable=False,
    )
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False)
    allowed: Mapped[bool] = mapped_column(Boolean, nullable=False)
    set_by: Mapped[str | None] = mapped_column(String(IDENTIFIER_MAX_LENGTH), nullable=True)
    set_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
