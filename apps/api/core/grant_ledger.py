from __future__ import annotations

import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.access_grant import AccessGrant


class GrantLike(Protocol):
    id: uuid.UUID
    subject_id: str
    scope: str
    grantee_org_id: int | None


class GrantLedger(Protocol):
    """Primitive access-grant operations, each transactional on its own."""

    def list_active(self, subject_id: str, scopes: Sequence[str]) -> list[GrantLike]: ...

    def create(self, subject_id: str, scope: str, grantee_org_id: int, actor: str) -> uuid.UUID: ...

    def revoke(self, grant_id: uuid.UUID, actor: str) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SqlGrantLedger:
    """Grant ledger backed by ``person_access_grants``.

    Writes are flushed but never committed; the caller owns the transaction.
    """

    def __init__(self, db: Session, clock: Callable[[], datetime] = _utcnow) -> None:
        self.db = db
        self.clock = clock

    def list_active(self, subject_id: str, scopes: Sequence[str]) -> list[AccessGrant]:
        if not scopes:
            return []
        return list(
            self.db.scalars(
                select(AccessGrant)
                .where(
                    AccessGrant.subject_id == subject_id,
                    AccessGrant.scope.in_(list(scopes)),
                    AccessGrant.grantee_org_id.is_not(None),
                    AccessGrant.revoked_at.is_(None),
                )
                .order_by(AccessGrant.granted_at.asc(), AccessGrant.id.asc())
            ).all()
        )

    def create(self, subject_id: str, scope: str, grantee_org_id: int, actor: str) -> uuid.UUID:
        if not scope:
            raise ValueError("grant scope must be a non-empty string")
        if grantee_org_id is None:
            raise ValueError("grantee_org_id is required for organization grants")
        grant = AccessGrant(
            subject_id=subject_id,
            scope=scope,
            grantee_org_id=grantee_org_id,
            granted_by=actor,
            granted_at=self.clock(),
        )
        self.db.add(grant)
        self.db.flush()
        return grant.id

    def revoke(self, grant_id: uuid.UUID, actor: str) -> None:
        grant = self.db.get(AccessGrant, grant_id)
        if grant is None or grant.revoked_at is not None:
            return
        grant.revoked_at = self.clock()
        grant.revoked_by = actor
        self.db.add(grant)
        self.db.flush()

    def list_for_subject(self, subject_id: str, *, include_revoked: bool = False) -> list[AccessGrant]:
        stmt = select(AccessGrant).where(AccessGrant.subject_id == subject_id)
        if not include_revoked:
            stmt = stmt.where(AccessGrant.revoked_at.is_(None))
        return list(self.db.scalars(stmt.order_by(AccessGrant.granted_at.desc(), AccessGrant.id.asc())).all())
