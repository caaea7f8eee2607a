from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from models.consent import ConsentScopeValue, ConsentStatus


class ConsentSave(BaseModel):
    scope: ConsentScopeValue
    allowed_org_ids: list[int] = Field(default_factory=list)
    blocked_org_ids: list[int] = Field(default_factory=list)
    method: str = Field(min_length=1, max_length=64)
    notes: Optional[str] = None
    policy_version: Optional[str] = Field(default=None, max_length=64)
    restrictions: Optional[dict[str, Any]] = None


class ConsentRevoke(BaseModel):
    reason: Optional[str] = None


class ConsentRenew(BaseModel):
    method: str = Field(min_length=1, max_length=64)
    policy_version: Optional[str] = Field(default=None, max_length=64)


class OrgOverrideSet(BaseModel):
    allowed: bool
    reason: Optional[str] = None


class ConsentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subject_id: str
    consent_kind: str
    scope: ConsentScopeValue
    status: ConsentStatus
    captured_by: Optional[str] = None
    captured_method: str
    policy_version: Optional[str] = None
    notes: Optional[str] = None
    restrictions: Optional[dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    expires_at: Optional[datetime] = None


class EffectiveConsentOut(BaseModel):
    consent: Optional[ConsentOut] = None
    scope: Optional[str] = None
    status: Optional[str] = None
    effective_status: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_expired: bool = False
    is_active: bool = False


class OrgSelectionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: Optional[str] = None
    organization_type: Optional[str] = None
    partnership_type: Optional[str] = None
    allowed: bool


class ConsentOrgOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    consent_id: UUID
    organization_id: int
    organization_name: Optional[str] = None
    allowed: bool
    set_by: Optional[str] = None
    set_at: datetime
    reason: Optional[str] = None


class ConsentOverviewOut(BaseModel):
    effective: EffectiveConsentOut
    allowed_org_ids: list[int]
    blocked_org_ids: list[int]
    organizations: list[OrgSelectionOut]
    overrides: list[ConsentOrgOut]


class GrantOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subject_id: str
    scope: str
    grantee_org_id: Optional[int] = None
    grantee_user_id: Optional[str] = None
    granted_by: Optional[str] = None
    granted_at: datetime
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None


class GrantChangeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    grant_id: UUID
    scope: str
    organization_id: int


class ReconcileOut(BaseModel):
    subject_id: str
    desired_org_ids: list[int]
    managed_scopes: list[str]
    created: list[GrantChangeOut]
    revoked: list[GrantChangeOut]
    noop: bool


class ConsentSaveOut(BaseModel):
    consent: ConsentOut
    previous_consent_id: Optional[UUID] = None
    allowed_org_ids: list[int]
    blocked_org_ids: list[int]
    grants: ReconcileOut


class ConsentRevokeOut(BaseModel):
    consent: ConsentOut
    grants: ReconcileOut


class OrgOverrideOut(BaseModel):
    override: ConsentOrgOut
    previous_allowed: Optional[bool] = None
    grants: Optional[ReconcileOut] = None


class OrgAccessOut(BaseModel):
    subject_id: str
    organization_id: int
    allowed: bool
