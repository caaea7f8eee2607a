from __future__ import annotations

import hashlib
import uuid
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from models.consent import ConsentOrgOverride, ConsentRecord, ConsentStatus


def subject_lock_key(subject_id: str, consent_kind: str) -> int:
    digest = hashlib.sha256(f"{consent_kind}|{subject_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


class ConsentStore:
    """Persistence for consent records and their organization overrides.

    Rows are never deleted. Writes are flushed, not committed; the lifecycle
    service owns the transaction boundary.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def lock_subject(self, subject_id: str, consent_kind: str) -> None:
        # Held until commit/rollback. Other backends rely on the one-active index.
        if self.db.get_bind().dialect.name == "postgresql":
            self.db.execute(
                text("SELECT pg_advisory_xact_lock(:key)"),
                {"key": subject_lock_key(subject_id, consent_kind)},
            )

    def get(self, consent_id: uuid.UUID) -> ConsentRecord | None:
        return self.db.get(ConsentRecord, consent_id)

    def latest_consent(self, subject_id: str, consent_kind: str) -> ConsentRecord | None:
        return self.db.scalar(
            select(ConsentRecord)
            .where(
                ConsentRecord.subject_id == subject_id,
                ConsentRecord.consent_kind == consent_kind,
            )
            .order_by(ConsentRecord.created_at.desc(), ConsentRecord.id.desc())
            .limit(1)
        )

    def insert(self, record: ConsentRecord) -> ConsentRecord:
        self.db.add(record)
        self.db.flush()
        return record

    def supersede(self, record: ConsentRecord, revoked_by: str, now: datetime, notes: str | None = None) -> ConsentRecord:
        record.status = ConsentStatus.REVOKED
        record.revoked_at = now
        record.revoked_by = revoked_by
        record.updated_at = now
        if notes is not None:
            record.notes = notes
        self.db.add(record)
        self.db.flush()
        return record

    def list_overrides(self, consent_id: uuid.UUID) -> list[ConsentOrgOverride]:
        return list(
            self.db.scalars(
                select(ConsentOrgOverride)
                .where(ConsentOrgOverride.consent_id == consent_id)
                .order_by(ConsentOrgOverride.set_at.desc(), ConsentOrgOverride.organization_id.asc())
            ).all()
        )

    def insert_overrides(
        self,
        consent_id: uuid.UUID,
        rows: Iterable[tuple[int, bool]],
        *,
        set_by: str,
        now: datetime,
        reason: str | None = None,
    ) -> list[ConsentOrgOverride]:
        overrides = [
            ConsentOrgOverride(
                consent_id=consent_id,
                organization_id=org_id,
                allowed=allowed,
                set_by=set_by,
                set_at=now,
                reason=reason,
            )
            for org_id, allowed in rows
        ]
        if overrides:
            self.db.add_all(overrides)
            self.db.flush()
        return overrides

    def upsert_override(
        self,
        consent_id: uuid.UUID,
        organization_id: int,
        allowed: bool,
        *,
        set_by: str,
        now: datetime,
        reason: str | None = None,
    ) -> tuple[ConsentOrgOverride, bool | None]:
        """Insert or replace the override for one organization.

        Returns the row and the previous ``allowed`` value (None when new).
        """
        existing = self.db.scalar(
            select(ConsentOrgOverride).where(
                ConsentOrgOverride.consent_id == consent_id,
                ConsentOrgOverride.organization_id == organization_id,
            )
        )
        previous = existing.allowed if existing is not None else None
        row = existing or ConsentOrgOverride(consent_id=consent_id, organization_id=organization_id)
        row.allowed = allowed
        row.set_by = set_by
        row.set_at = now
        row.reason = reason
        self.db.add(row)
        self.db.flush()
        return row, previous

    def list_subject_ids(self, consent_kind: str) -> list[str]:
        return list(
            self.db.scalars(
                select(ConsentRecord.subject_id)
                .where(ConsentRecord.consent_kind == consent_kind)
                .distinct()
                .order_by(ConsentRecord.subject_id.asc())
            ).all()
        )
