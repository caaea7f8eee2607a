"""Consent lifecycle: save, revoke, renew and per-organization overrides.

Every write runs as one transaction on the caller's session, under a
per-subject lock, and ends by resolving the consent against the organization
directory and reconciling the subject's organization grants. Audit events are
queued while the transaction runs and delivered best-effort after commit.

Grant contract:

* ``save`` and ``renew`` reconcile grants to the new consent's allowed set.
* ``revoke`` reconciles grants to the empty set.
* ``update_org_override`` re-resolves and re-reconciles when the edited
  consent is the subject's active consent.
* An expired consent authorizes no grants; ``reconcile_subject_grants`` is the
  recovery path that re-applies the current consent after a crash or expiry.
"""
from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.audit import ENTITY_CONSENT, ENTITY_GRANT, AuditEventIn, AuditSink, NullAuditSink, emit_audit_events
from core.consent_resolver import (
    ConsentScope,
    EffectiveConsent,
    OrgResolution,
    as_utc,
    build_scope,
    effective_consent,
    resolve_consent_orgs,
    resolve_scope,
    scope_allows,
    scope_from_overrides,
)
from core.consent_store import ConsentStore
from core.errors import ConsentConflictError, ConsentInvariantError, ConsentNotFoundError
from core.failure_modes import record_operation_failure
from core.grant_ledger import GrantLedger, SqlGrantLedger
from core.grant_reconciler import DEFAULT_MANAGED_SCOPES, GrantReconciler, ReconcileResult
from core.logging_utils import log_structured
from core.observability import METRIC_CONSENT_CONFLICT, increment_metric
from core.org_directory import OrganizationDirectory
from models.consent import (
    IDENTIFIER_MAX_LENGTH,
    LABEL_MAX_LENGTH,
    ConsentOrgOverride,
    ConsentRecord,
    ConsentScopeValue,
    ConsentStatus,
)

DEFAULT_CONSENT_KIND = "data_sharing"

# Widths of the columns these values are stored in.
_TEXT_LIMITS = {
    "subject_id": IDENTIFIER_MAX_LENGTH,
    "actor": IDENTIFIER_MAX_LENGTH,
    "method": LABEL_MAX_LENGTH,
    "policy_version": LABEL_MAX_LENGTH,
}

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SaveResult:
    consent: ConsentRecord
    previous_consent: ConsentRecord | None
    resolution: OrgResolution
    reconciliation: ReconcileResult


@dataclass(frozen=True)
class RevokeResult:
    consent: ConsentRecord
    reconciliation: ReconcileResult


@dataclass(frozen=True)
class OverrideResult:
    override: ConsentOrgOverride
    previous_allowed: bool | None
    reconciliation: ReconcileResult | None


@dataclass(frozen=True)
class ConsentOrgView:
    id: uuid.UUID
    consent_id: uuid.UUID
    organization_id: int
    organization_name: str | None
    allowed: bool
    set_by: str | None
    set_at: datetime
    reason: str | None


@dataclass(frozen=True)
class ConsentOverview:
    effective: EffectiveConsent
    resolution: OrgResolution
    overrides: list[ConsentOrgView] = field(default_factory=list)


class ConsentLifecycleService:
    def __init__(
        self,
        db: Session,
        *,
        expiry_days: int,
        consent_kind: str = DEFAULT_CONSENT_KIND,
        managed_scopes: Sequence[str] = DEFAULT_MANAGED_SCOPES,
        audit: AuditSink | None = None,
        directory: OrganizationDirectory | None = None,
        ledger: GrantLedger | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if expiry_days <= 0:
            raise ValueError("expiry_days must be positive")
        self.db = db
        self.expiry_days = expiry_days
        self.consent_kind = consent_kind
        self.clock = clock
        self.store = ConsentStore(db)
        self.directory = directory or OrganizationDirectory(db)
        self.ledger = ledger or SqlGrantLedger(db, clock)
        self.reconciler = GrantReconciler(self.ledger, managed_scopes)
        self.audit: AuditSink = audit or NullAuditSink()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_consent(self, consent_id: uuid.UUID) -> ConsentRecord:
        record = self.store.get(consent_id)
        if record is None or record.consent_kind != self.consent_kind:
            raise ConsentNotFoundError(consent_id)
        return record

    def get_effective_consent(self, subject_id: str) -> EffectiveConsent:
        return effective_consent(self.store.latest_consent(subject_id, self.consent_kind), self.clock())

    def list_consent_orgs(self, consent_id: uuid.UUID) -> list[ConsentOrgView]:
        self.get_consent(consent_id)
        rows = self.store.list_overrides(consent_id)
        names = self.directory.names_by_id({row.organization_id for row in rows})
        return [
            ConsentOrgView(
                id=row.id,
                consent_id=row.consent_id,
                organization_id=row.organization_id,
                organization_name=names.get(row.organization_id),
                allowed=row.allowed,
                set_by=row.set_by,
                set_at=as_utc(row.set_at),
                reason=row.reason,
            )
            for row in rows
        ]

    def get_consent_overview(self, subject_id: str, exclude_org_id: int | None = None) -> ConsentOverview:
        effective = self.get_effective_consent(subject_id)
        organizations = self.directory.list_participating(exclude_org_id=exclude_org_id)
        if effective.consent is None:
            return ConsentOverview(effective=effective, resolution=resolve_scope(build_scope(None), organizations))
        overrides = self.list_consent_orgs(effective.consent.id)
        resolution = resolve_consent_orgs(effective.consent.scope, organizations, overrides)
        return ConsentOverview(effective=effective, resolution=resolution, overrides=overrides)

    def consent_allows_org(
        self,
        subject_id: str,
        organization_id: int | None,
        exclude_org_ids: Iterable[int] = (),
    ) -> bool:
        if organization_id is None or organization_id in frozenset(int(org_id) for org_id in exclude_org_ids):
            return False
        effective = self.get_effective_consent(subject_id)
        if not effective.is_active:
            return False
        participating = {org.id for org in self.directory.list_participating()}
        if organization_id not in participating:
            return False
        scope = scope_from_overrides(effective.consent.scope, self.store.list_overrides(effective.consent.id))
        return scope_allows(scope, organization_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save(
        self,
        subject_id: str,
        scope: ConsentScopeValue | str,
        allowed_org_ids: Iterable[int] = (),
        blocked_org_ids: Iterable[int] = (),
        *,
        actor: str,
        method: str,
        notes: str | None = None,
        policy_version: str | None = None,
        restrictions: dict[str, Any] | None = None,
        exclude_org_ids: Iterable[int] = (),
    ) -> SaveResult:
        """
        Record a new consent decision for ``subject_id``.

        Any active consent for the subject is superseded, the new record is
        inserted as active with a fresh expiry, override rows are written for
        the scope (block-list for ``all_orgs``, allow-list for
        ``selected_orgs``, nothing for ``none``) and grants are reconciled to
        the resolved allowed organizations minus ``exclude_org_ids``.

        Raises:
            ConsentInvariantError: inconsistent scope/organization choices.
            ConsentConflictError: a concurrent writer won the race; retry.
        """
        self._require_text(subject_id=subject_id, actor=actor, method=method)
        self._limit_text(policy_version=policy_version)
        consent_scope = build_scope(scope, allowed_org_ids, blocked_org_ids)
        excluded = frozenset(int(org_id) for org_id in exclude_org_ids)

        def _work(pending: list[AuditEventIn]) -> SaveResult:
            self.store.lock_subject(subject_id, self.consent_kind)
            return self._save_locked(
                pending,
                subject_id=subject_id,
                scope=consent_scope,
                actor=actor,
                method=method,
                notes=notes,
                policy_version=policy_version,
                restrictions=restrictions,
                excluded=excluded,
            )

        return self._run("consent.save", _work, subject_id=subject_id)

    def revoke(
        self,
        consent_id: uuid.UUID,
        *,
        actor: str,
        reason: str | None = None,
        exclude_org_ids: Iterable[int] = (),
    ) -> RevokeResult:
        """Revoke a consent and withdraw every managed organization grant."""
        self._require_text(actor=actor)
        record = self.get_consent(consent_id)
        excluded = frozenset(int(org_id) for org_id in exclude_org_ids)

        def _work(pending: list[AuditEventIn]) -> RevokeResult:
            self._lock_and_refresh(record)
            if record.status != ConsentStatus.ACTIVE:
                raise ConsentInvariantError("Consent already revoked", already_revoked=True)
            now = self.clock()
            self.store.supersede(record, actor, now, notes=reason)
            reconciliation = self.reconciler.reconcile(
                record.subject_id, (), actor=actor, exclude_org_ids=excluded
            )
            pending.append(
                self._consent_event(
                    actor,
                    "consent_revoked",
                    record,
                    reason=reason,
                )
            )
            pending.extend(self._grant_events(actor, record.id, reconciliation))
            return RevokeResult(consent=record, reconciliation=reconciliation)

        return self._run("consent.revoke", _work, resource_id=consent_id, subject_id=record.subject_id)

    def update_org_override(
        self,
        consent_id: uuid.UUID,
        organization_id: int,
        allowed: bool,
        *,
        actor: str,
        reason: str | None = None,
        exclude_org_ids: Iterable[int] = (),
    ) -> OverrideResult:
        """
        Set one organization's override on an active consent and bring grants
        in line with the re-resolved consent in the same transaction.
        """
        self._require_text(actor=actor)
        record = self.get_consent(consent_id)
        excluded = frozenset(int(org_id) for org_id in exclude_org_ids)

        def _work(pending: list[AuditEventIn]) -> OverrideResult:
            self._lock_and_refresh(record)
            if record.status != ConsentStatus.ACTIVE:
                raise ConsentInvariantError("Overrides can only change on an active consent", already_revoked=True)
            if ConsentScopeValue(record.scope) == ConsentScopeValue.NONE:
                raise ConsentInvariantError("Organization overrides do not apply to scope 'none'")
            now = self.clock()
            row, previous_allowed = self.store.upsert_override(
                record.id,
                int(organization_id),
                bool(allowed),
                set_by=actor,
                now=now,
                reason=reason,
            )
            record.updated_at = now
            self.db.add(record)

            resolution = self._resolve(record, excluded)
            reconciliation = self.reconciler.reconcile(
                record.subject_id,
                self._authorized_org_ids(record, resolution, now),
                actor=actor,
                exclude_org_ids=excluded,
            )
            pending.append(
                self._consent_event(
                    actor,
                    "consent_org_updated",
                    record,
                    organization_id=int(organization_id),
                    allowed=bool(allowed),
                    previous_allowed=previous_allowed,
                    reason=reason,
                    allowed_org_ids=resolution.allowed_org_ids,
                    blocked_org_ids=resolution.blocked_org_ids,
                )
            )
            pending.extend(self._grant_events(actor, record.id, reconciliation))
            return OverrideResult(override=row, previous_allowed=previous_allowed, reconciliation=reconciliation)

        return self._run("consent.override", _work, resource_id=consent_id, subject_id=record.subject_id)

    def renew(
        self,
        consent_id: uuid.UUID,
        *,
        actor: str,
        method: str,
        policy_version: str | None = None,
        exclude_org_id: int | None = None,
    ) -> SaveResult:
        """
        Re-issue an active consent with a fresh expiry.

        The subject's earlier choices are re-resolved against the current
        organization directory, so organizations that joined since the original
        decision follow the blanket rule and organizations that left drop out.
        """
        self._require_text(actor=actor, method=method)
        self._limit_text(policy_version=policy_version)
        record = self.get_consent(consent_id)
        excluded = frozenset({exclude_org_id}) if exclude_org_id is not None else frozenset()

        def _work(pending: list[AuditEventIn]) -> SaveResult:
            self._lock_and_refresh(record)
            if record.status != ConsentStatus.ACTIVE:
                raise ConsentInvariantError("Only the active consent can be renewed", already_revoked=True)
            organizations = self.directory.list_participating(exclude_org_id=exclude_org_id)
            resolution = resolve_consent_orgs(record.scope, organizations, self.store.list_overrides(record.id))
            scope_value = ConsentScopeValue(record.scope)
            if scope_value == ConsentScopeValue.ALL_ORGS:
                consent_scope = build_scope(scope_value, blocked_org_ids=resolution.blocked_org_ids)
            elif scope_value == ConsentScopeValue.SELECTED_ORGS:
                consent_scope = build_scope(scope_value, allowed_org_ids=resolution.allowed_org_ids)
            else:
                consent_scope = build_scope(scope_value)
            return self._save_locked(
                pending,
                subject_id=record.subject_id,
                scope=consent_scope,
                actor=actor,
                method=method,
                notes=record.notes,
                policy_version=policy_version or record.policy_version,
                restrictions=record.restrictions,
                excluded=excluded,
                action="consent_renewed",
            )

        return self._run("consent.renew", _work, resource_id=consent_id, subject_id=record.subject_id)

    def reconcile_subject_grants(
        self,
        subject_id: str,
        *,
        actor: str,
        exclude_org_ids: Iterable[int] = (),
    ) -> ReconcileResult:
        """Re-apply the subject's current consent to the grant ledger."""
        self._require_text(subject_id=subject_id, actor=actor)
        excluded = frozenset(int(org_id) for org_id in exclude_org_ids)

        def _work(pending: list[AuditEventIn]) -> ReconcileResult:
            self.store.lock_subject(subject_id, self.consent_kind)
            record = self.store.latest_consent(subject_id, self.consent_kind)
            desired: list[int] = []
            if record is not None:
                desired = self._authorized_org_ids(record, self._resolve(record, excluded), self.clock())
            reconciliation = self.reconciler.reconcile(subject_id, desired, actor=actor, exclude_org_ids=excluded)
            pending.extend(self._grant_events(actor, record.id if record is not None else None, reconciliation))
            return reconciliation

        return self._run("grants.reconcile", _work, subject_id=subject_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _save_locked(
        self,
        pending: list[AuditEventIn],
        *,
        subject_id: str,
        scope: ConsentScope,
        actor: str,
        method: str,
        notes: str | None,
        policy_version: str | None,
        restrictions: dict[str, Any] | None,
        excluded: frozenset[int],
        action: str | None = None,
    ) -> SaveResult:
        now = self.clock()
        previous = self.store.latest_consent(subject_id, self.consent_kind)
        previous_was_active = previous is not None and previous.status == ConsentStatus.ACTIVE
        if previous_was_active:
            self.store.supersede(previous, actor, now)

        created_at = now
        if previous is not None:
            previous_created_at = as_utc(previous.created_at)
            if created_at <= previous_created_at:
                created_at = previous_created_at + timedelta(microseconds=1)

        record = self.store.insert(
            ConsentRecord(
                subject_id=subject_id,
                consent_kind=self.consent_kind,
                scope=scope.value,
                status=ConsentStatus.ACTIVE,
                captured_by=actor,
                captured_method=method,
                policy_version=policy_version,
                notes=notes,
                restrictions=restrictions,
                created_at=created_at,
                updated_at=created_at,
                expires_at=created_at + timedelta(days=self.expiry_days),
            )
        )
        self.store.insert_overrides(record.id, scope.override_rows(), set_by=actor, now=created_at, reason=notes)

        organizations = [org for org in self.directory.list_participating() if org.id not in excluded]
        resolution = resolve_scope(scope, organizations)
        reconciliation = self.reconciler.reconcile(
            subject_id, resolution.allowed_org_ids, actor=actor, exclude_org_ids=excluded
        )

        if previous_was_active:
            pending.append(self._consent_event(actor, "consent_revoked", previous, superseded_by=str(record.id)))
        pending.append(
            self._consent_event(
                actor,
                action or ("consent_updated" if previous is not None else "consent_created"),
                record,
                previous_consent_id=str(previous.id) if previous is not None else None,
                previous_scope=ConsentScopeValue(previous.scope).value if previous is not None else None,
                allowed_org_ids=resolution.allowed_org_ids,
                blocked_org_ids=resolution.blocked_org_ids,
                method=method,
                policy_version=policy_version,
                expires_at=as_utc(record.expires_at).isoformat(),
            )
        )
        if previous is not None:
            previous_resolution = resolve_consent_orgs(
                previous.scope, organizations, self.store.list_overrides(previous.id)
            )
            if set(previous_resolution.allowed_org_ids) != set(resolution.allowed_org_ids):
                pending.append(
                    self._consent_event(
                        actor,
                        "consent_org_updated",
                        record,
                        previous_allowed_org_ids=previous_resolution.allowed_org_ids,
                        previous_blocked_org_ids=previous_resolution.blocked_org_ids,
                        allowed_org_ids=resolution.allowed_org_ids,
                        blocked_org_ids=resolution.blocked_org_ids,
                    )
                )
        pending.extend(self._grant_events(actor, record.id, reconciliation))
        return SaveResult(
            consent=record,
            previous_consent=previous,
            resolution=resolution,
            reconciliation=reconciliation,
        )

    def _run(
        self,
        operation: str,
        work: Callable[[list[AuditEventIn]], T],
        *,
        subject_id: str | None = None,
        resource_id: uuid.UUID | None = None,
    ) -> T:
        pending: list[AuditEventIn] = []
        try:
            result = work(pending)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            conflict = ConsentConflictError(subject_id, self.consent_kind)
            increment_metric(METRIC_CONSENT_CONFLICT, reason=operation)
            record_operation_failure(operation=operation, exc=conflict, resource_id=resource_id)
            raise conflict from exc
        except Exception as exc:
            self.db.rollback()
            record_operation_failure(operation=operation, exc=exc, resource_id=resource_id)
            raise

        log_structured("consent.operation_committed", operation=operation, consent_id=resource_id)
        emit_audit_events(self.audit, pending)
        return result

    def _lock_and_refresh(self, record: ConsentRecord) -> None:
        self.store.lock_subject(record.subject_id, self.consent_kind)
        self.db.refresh(record)

    def _resolve(self, record: ConsentRecord, excluded: frozenset[int]) -> OrgResolution:
        organizations = [org for org in self.directory.list_participating() if org.id not in excluded]
        return resolve_consent_orgs(record.scope, organizations, self.store.list_overrides(record.id))

    def _authorized_org_ids(self, record: ConsentRecord, resolution: OrgResolution, now: datetime) -> list[int]:
        if effective_consent(record, now).is_active:
            return resolution.allowed_org_ids
        return []

    def _consent_event(self, actor: str, action: str, record: ConsentRecord, **meta: Any) -> AuditEventIn:
        return AuditEventIn(
            actor=actor,
            action=action,
            entity_type=ENTITY_CONSENT,
            entity_id=str(record.id),
            meta={
                "subject_id": record.subject_id,
                "consent_kind": record.consent_kind,
                "scope": ConsentScopeValue(record.scope).value,
                **meta,
            },
        )

    def _grant_events(
        self,
        actor: str,
        consent_id: uuid.UUID | None,
        reconciliation: ReconcileResult,
    ) -> list[AuditEventIn]:
        events: list[AuditEventIn] = []
        for action, changes in (("grant_revoked", reconciliation.revoked), ("grant_created", reconciliation.created)):
            for change in changes:
                events.append(
                    AuditEventIn(
                        actor=actor,
                        action=action,
                        entity_type=ENTITY_GRANT,
                        entity_id=str(change.grant_id),
                        meta={
                            "subject_id": change.subject_id,
                            "scope": change.scope,
                            "organization_id": change.organization_id,
                            "consent_id": str(consent_id) if consent_id is not None else None,
                        },
                    )
                )
        return events

    @staticmethod
    def _require_text(**values: str | None) -> None:
        for name, value in values.items():
            if not isinstance(value, str) or not value.strip():
                raise ConsentInvariantError(f"{name} must be a non-empty string")
        ConsentLifecycleService._limit_text(**values)

    @staticmethod
    def _limit_text(**values: str | None) -> None:
        for name, value in values.items():
            limit = _TEXT_LIMITS[name]
            if value is not None and len(value) > limit:
                raise ConsentInvariantError(f"{name} must be at most {limit} characters")
