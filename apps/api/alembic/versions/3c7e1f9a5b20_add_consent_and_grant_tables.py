"""add consent and grant tables

Revision ID: 3c7e1f9a5b20
Revises:
Create Date: 2026-10-12 09:40:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3c7e1f9a5b20"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_table(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _has_index(inspector: sa.Inspector, table_name: str, index_name: str) -> bool:
    return any(index["name"] == index_name for index in inspector.get_indexes(table_name))


def upgrade() -> None:
    """Upgrade schema."""
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    # --- participating_organizations ---
    if not _has_table(inspector, "participating_organizations"):
        op.create_table(
            "participating_organizations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=256), nullable=False),
            sa.Column("organization_type", sa.String(length=64), nullable=True),
            sa.Column("partnership_type", sa.String(length=64), nullable=True),
            sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )

    inspector = sa.inspect(bind)

    # --- person_consents ---
    if not _has_table(inspector, "person_consents"):
        op.create_table(
            "person_consents",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("subject_id", sa.String(length=128), nullable=False),
            sa.Column("consent_kind", sa.String(length=64), nullable=False),
            sa.Column("scope", sa.String(length=13), nullable=False),
            sa.Column("status", sa.String(length=7), nullable=False),
            sa.Column("captured_by", sa.String(length=128), nullable=True),
            sa.Column("captured_method", sa.String(length=64), nullable=False),
            sa.Column("policy_version", sa.String(length=64), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("restrictions", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("revoked_by", sa.String(length=128), nullable=True),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint("scope IN ('none', 'all_orgs', 'selected_orgs')", name="ck_person_consents_scope"),
            sa.CheckConstraint("status IN ('active', 'revoked')", name="ck_person_consents_status"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_person_consents_subject_id", "person_consents", ["subject_id"], unique=False)
        op.create_index(
            "ix_person_consents_subject_kind_created",
            "person_consents",
            ["subject_id", "consent_kind", "created_at"],
            unique=False,
        )

    inspector = sa.inspect(bind)
    if not _has_index(inspector, "person_consents", "uq_person_consents_one_active"):
        op.create_index(
            "uq_person_consents_one_active",
            "person_consents",
            ["subject_id", "consent_kind"],
            unique=True,
            postgresql_where=sa.text("status = 'active'"),
            sqlite_where=sa.text("status = 'active'"),
        )

    # --- person_consent_orgs ---
    if not _has_table(inspector, "person_consent_orgs"):
        op.create_table(
            "person_consent_orgs",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("consent_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("allowed", sa.Boolean(), nullable=False),
            sa.Column("set_by", sa.String(length=128), nullable=True),
            sa.Column("set_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["consent_id"], ["person_consents.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("consent_id", "organization_id", name="uq_person_consent_orgs_consent_org"),
        )
        op.create_index("ix_person_consent_orgs_consent_id", "person_consent_orgs", ["consent_id"], unique=False)

    inspector = sa.inspect(bind)

    # --- person_access_grants ---
    if not _has_table(inspector, "person_access_grants"):
        op.create_table(
            "person_access_grants",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("subject_id", sa.String(length=128), nullable=False),
            sa.Column("scope", sa.String(length=64), nullable=False),
            sa.Column("grantee_org_id", sa.Integer(), nullable=True),
            sa.Column("grantee_user_id", sa.String(length=128), nullable=True),
            sa.Column("granted_by", sa.String(length=128), nullable=True),
            sa.Column("granted_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("revoked_by", sa.String(length=128), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_person_access_grants_subject_id", "person_access_grants", ["subject_id"], unique=False)
        op.create_index(
            "ix_person_access_grants_subject_scope",
            "person_access_grants",
            ["subject_id", "scope"],
            unique=False,
        )

    inspector = sa.inspect(bind)
    if not _has_index(inspector, "person_access_grants", "uq_person_access_grants_active_org_scope"):
        op.create_index(
            "uq_person_access_grants_active_org_scope",
            "person_access_grants",
            ["subject_id", "scope", "grantee_org_id"],
            unique=True,
            postgresql_where=sa.text("revoked_at IS NULL AND grantee_org_id IS NOT NULL"),
            sqlite_where=sa.text("revoked_at IS NULL AND grantee_org_id IS NOT NULL"),
        )

    # --- audit_events ---
    if not _has_table(inspector, "audit_events"):
        op.create_table(
            "audit_events",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("action", sa.String(length=64), nullable=False),
            sa.Column("actor", sa.String(length=128), server_default=sa.text("'system'"), nullable=False),
            sa.Column("entity_type", sa.String(length=64), nullable=False),
            sa.Column("entity_ref", sa.String(length=256), nullable=False),
            sa.Column("meta", sa.JSON(), nullable=False),
            sa.Column("at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_audit_events_action", "audit_events", ["action"], unique=False)
        op.create_index("ix_audit_events_entity_ref", "audit_events", ["entity_ref"], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_audit_events_entity_ref", table_name="audit_events")
    op.drop_index("ix_audit_events_action", table_name="audit_events")
    op.drop_table("audit_events")

    op.drop_index("uq_person_access_grants_active_org_scope", table_name="person_access_grants")
    op.drop_index("ix_person_access_grants_subject_scope", table_name="person_access_grants")
    op.drop_index("ix_person_access_grants_subject_id", table_name="person_access_grants")
    op.drop_table("person_access_grants")

    op.drop_index("ix_person_consent_orgs_consent_id", table_name="person_consent_orgs")
    op.drop_table("person_consent_orgs")

    op.drop_index("uq_person_consents_one_active", table_name="person_consents")
    op.drop_index("ix_person_consents_subject_kind_created", table_name="person_consents")
    op.drop_index("ix_person_consents_subject_id", table_name="person_consents")
    op.drop_table("person_consents")

    op.drop_table("participating_organizations")
