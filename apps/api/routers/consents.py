from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.orm import Session

from core.audit import AuditSink
from core.config import get_settings
from core.consent_resolver import EffectiveConsent, OrgResolution
from core.consent_service import ConsentOrgView
from core.contracts import paginated
from core.deps import build_consent_service, get_audit_sink, get_db, require_actor
from core.grant_ledger import SqlGrantLedger
from core.grant_reconciler import ReconcileResult
from models.consent import IDENTIFIER_MAX_LENGTH
from schemas.consent import (
    ConsentOrgOut,
    ConsentOut,
    ConsentOverviewOut,
    ConsentRenew,
    ConsentRevoke,
    ConsentRevokeOut,
    ConsentSave,
    ConsentSaveOut,
    EffectiveConsentOut,
    GrantChangeOut,
    GrantOut,
    OrgAccessOut,
    OrgOverrideOut,
    OrgOverrideSet,
    OrgSelectionOut,
    ReconcileOut,
)

router = APIRouter(tags=["consents"])

SubjectId = Annotated[str, Path(min_length=1, max_length=IDENTIFIER_MAX_LENGTH)]


def _effective_out(effective: EffectiveConsent) -> EffectiveConsentOut:
    return EffectiveConsentOut(
        consent=ConsentOut.model_validate(effective.consent) if effective.consent is not None else None,
        scope=effective.scope,
        status=effective.status,
        effective_status=effective.effective_status,
        expires_at=effective.expires_at,
        is_expired=effective.is_expired,
        is_active=effective.is_active,
    )


def _reconcile_out(result: ReconcileResult) -> ReconcileOut:
    return ReconcileOut(
        subject_id=result.subject_id,
        desired_org_ids=sorted(result.desired_org_ids),
        managed_scopes=list(result.managed_scopes),
        created=[GrantChangeOut.model_validate(change) for change in result.created],
        revoked=[GrantChangeOut.model_validate(change) for change in result.revoked],
        noop=result.is_noop,
    )


def _org_out(view: ConsentOrgView) -> ConsentOrgOut:
    return ConsentOrgOut.model_validate(view)


def _overview_out(effective: EffectiveConsent, resolution: OrgResolution, overrides: list[ConsentOrgView]) -> ConsentOverviewOut:
    return ConsentOverviewOut(
        effective=_effective_out(effective),
        allowed_org_ids=resolution.allowed_org_ids,
        blocked_org_ids=resolution.blocked_org_ids,
        organizations=[OrgSelectionOut.model_validate(selection) for selection in resolution.selections],
        overrides=[_org_out(view) for view in overrides],
    )


@router.get("/subjects/{subject_id}/consent", response_model=ConsentOverviewOut)
def get_subject_consent(subject_id: SubjectId, db: Session = Depends(get_db)):
    overview = build_consent_service(db).get_consent_overview(
        subject_id, exclude_org_id=get_settings().operator_org_id
    )
    return _overview_out(overview.effective, overview.resolution, overview.overrides)


@router.post(
    "/subjects/{subject_id}/consent",
    response_model=ConsentSaveOut,
    description="Records a new consent decision, superseding the active one, and reconciles grants.",
)
def save_subject_consent(
    subject_id: SubjectId,
    payload: ConsentSave,
    db: Session = Depends(get_db),
    actor: str = Depends(require_actor),
    audit: AuditSink = Depends(get_audit_sink),
):
    result = build_consent_service(db, audit).save(
        subject_id,
        payload.scope,
        payload.allowed_org_ids,
        payload.blocked_org_ids,
        actor=actor,
        method=payload.method,
        notes=payload.notes,
        policy_version=payload.policy_version,
        restrictions=payload.restrictions,
        exclude_org_ids=get_settings().excluded_org_ids,
    )
    return ConsentSaveOut(
        consent=ConsentOut.model_validate(result.consent),
        previous_consent_id=result.previous_consent.id if result.previous_consent is not None else None,
        allowed_org_ids=result.resolution.allowed_org_ids,
        blocked_org_ids=result.resolution.blocked_org_ids,
        grants=_reconcile_out(result.reconciliation),
    )


@router.get(
    "/subjects/{subject_id}/consent/orgs/{organization_id}",
    response_model=OrgAccessOut,
)
def check_org_access(subject_id: SubjectId, organization_id: int, db: Session = Depends(get_db)):
    allowed = build_consent_service(db).consent_allows_org(
        subject_id, organization_id, exclude_org_ids=get_settings().excluded_org_ids
    )
    return OrgAccessOut(subject_id=subject_id, organization_id=organization_id, allowed=allowed)


@router.post("/consents/{consent_id}/revoke", response_model=ConsentRevokeOut)
def revoke_consent(
    consent_id: UUID,
    payload: ConsentRevoke,
    db: Session = Depends(get_db),
    actor: str = Depends(require_actor),
    audit: AuditSink = Depends(get_audit_sink),
):
    result = build_consent_service(db, audit).revoke(
        consent_id,
        actor=actor,
        reason=payload.reason,
        exclude_org_ids=get_settings().excluded_org_ids,
    )
    return ConsentRevokeOut(
        consent=ConsentOut.model_validate(result.consent),
        grants=_reconcile_out(result.reconciliation),
    )


@router.post("/consents/{consent_id}/renew", response_model=ConsentSaveOut)
def renew_consent(
    consent_id: UUID,
    payload: ConsentRenew,
    db: Session = Depends(get_db),
    actor: str = Depends(require_actor),
    audit: AuditSink = Depends(get_audit_sink),
):
    result = build_consent_service(db, audit).renew(
        consent_id,
        actor=actor,
        method=payload.method,
        policy_version=payload.policy_version,
        exclude_org_id=get_settings().operator_org_id,
    )
    return ConsentSaveOut(
        consent=ConsentOut.model_validate(result.consent),
        previous_consent_id=result.previous_consent.id if result.previous_consent is not None else None,
        allowed_org_ids=result.resolution.allowed_org_ids,
        blocked_org_ids=result.resolution.blocked_org_ids,
        grants=_reconcile_out(result.reconciliation),
    )


@router.get("/consents/{consent_id}/orgs", response_model=list[ConsentOrgOut])
def list_consent_orgs(consent_id: UUID, db: Session = Depends(get_db)):
    return [_org_out(view) for view in build_consent_service(db).list_consent_orgs(consent_id)]


@router.put("/consents/{consent_id}/orgs/{organization_id}", response_model=OrgOverrideOut)
def set_consent_org(
    consent_id: UUID,
    organization_id: int,
    payload: OrgOverrideSet,
    db: Session = Depends(get_db),
    actor: str = Depends(require_actor),
    audit: AuditSink = Depends(get_audit_sink),
):
    result = build_consent_service(db, audit).update_org_override(
        consent_id,
        organization_id,
        payload.allowed,
        actor=actor,
        reason=payload.reason,
        exclude_org_ids=get_settings().excluded_org_ids,
    )
    return OrgOverrideOut(
        override=ConsentOrgOut.model_validate(result.override),
        previous_allowed=result.previous_allowed,
        grants=_reconcile_out(result.reconciliation) if result.reconciliation is not None else None,
    )


@router.get("/subjects/{subject_id}/grants", response_model=dict, description="Supports pagination with limit/offset.")
def list_subject_grants(
    subject_id: SubjectId,
    include_revoked: bool = False,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    limit = limit if isinstance(limit, int) else int(getattr(limit, "default", 50))
    offset = offset if isinstance(offset, int) else int(getattr(offset, "default", 0))
    grants = SqlGrantLedger(db).list_for_subject(subject_id, include_revoked=include_revoked)
    items = [GrantOut.model_validate(grant).model_dump(mode="json") for grant in grants[offset : offset + limit]]
    return paginated(items, limit=limit, offset=offset, count=len(grants))


@router.post("/subjects/{subject_id}/grants/reconcile", response_model=ReconcileOut)
def reconcile_subject_grants(
    subject_id: SubjectId,
    db: Session = Depends(get_db),
    actor: str = Depends(require_actor),
    audit: AuditSink = Depends(get_audit_sink),
):
    result = build_consent_service(db, audit).reconcile_subject_grants(
        subject_id,
        actor=actor,
        exclude_org_ids=get_settings().excluded_org_ids,
    )
    return _reconcile_out(result)
