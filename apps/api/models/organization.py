from sqlalchemy import Boolean, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base


class ParticipatingOrganization(Base):
    """Read-only view of organizations eligible for consent-based sharing."""

    __tablename__ = "participating_organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    organization_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    partnership_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
