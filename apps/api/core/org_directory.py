from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.organization import ParticipatingOrganization


class OrganizationDirectory:
    """Read-only lookup of organizations eligible for consent-based sharing."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def list_participating(self, exclude_org_id: int | None = None) -> list[ParticipatingOrganization]:
        stmt = select(ParticipatingOrganization).where(ParticipatingOrganization.is_active.is_(True))
        if exclude_org_id is not None:
            stmt = stmt.where(ParticipatingOrganization.id != exclude_org_id)
        return list(self.db.scalars(stmt.order_by(ParticipatingOrganization.name.asc(), ParticipatingOrganization.id.asc())).all())

    def names_by_id(self, org_ids: set[int]) -> dict[int, str]:
        if not org_ids:
            return {}
        rows = self.db.execute(
            select(ParticipatingOrganization.id, ParticipatingOrganization.name).where(
                ParticipatingOrganization.id.in_(sorted(org_ids))
            )
        ).all()
        return {row.id: row.name for row in rows}
