from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from core.grant_ledger import GrantLedger, GrantLike
from core.logging_utils import log_structured
from core.observability import (
    METRIC_GRANT_CREATED,
    METRIC_GRANT_REVOKED,
    METRIC_RECONCILE_NOOP,
    increment_metric,
)
from core.reconcile import reconcile

DEFAULT_MANAGED_SCOPES: tuple[str, ...] = ("view", "update_contact")


@dataclass(frozen=True)
class GrantChange:
    grant_id: uuid.UUID
    subject_id: str
    scope: str
    organization_id: int


@dataclass(frozen=True)
class ReconcileResult:
    subject_id: str
    desired_org_ids: frozenset[int]
    managed_scopes: tuple[str, ...]
    created: list[GrantChange] = field(default_factory=list)
    revoked: list[GrantChange] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.created and not self.revoked


class GrantReconciler:
    """
    Converges a subject's organization grants onto a desired organization set.

    Only grants whose scope is one of the managed scopes and whose grantee is
    an organization are read or changed. Grants to users, and grants with any
    other scope, belong to other writers and are never touched.

    Reconciliation is declarative: every call recomputes the full desired set
    of (organization, scope) pairs and diffs it against the ledger. A second
    call with the same input makes no changes, and a call that failed part-way
    converges when repeated.
    """

    def __init__(self, ledger: GrantLedger, managed_scopes: Sequence[str] = DEFAULT_MANAGED_SCOPES) -> None:
        scopes = tuple(dict.fromkeys(scope for scope in managed_scopes if scope))
        if not scopes:
            raise ValueError("at least one managed scope is required")
        self.ledger = ledger
        self.managed_scopes = scopes

    def reconcile(
        self,
        subject_id: str,
        desired_org_ids: Iterable[int],
        *,
        actor: str,
        exclude_org_ids: Iterable[int] = (),
    ) -> ReconcileResult:
        effective = frozenset(int(org_id) for org_id in desired_org_ids) - frozenset(
            int(org_id) for org_id in exclude_org_ids
        )
        desired_pairs = [(org_id, scope) for org_id in sorted(effective) for scope in self.managed_scopes]

        existing = [
            grant
            for grant in self.ledger.list_active(subject_id, self.managed_scopes)
            if grant.grantee_org_id is not None and grant.scope in self.managed_scopes
        ]

        def _create(pair: tuple[int, str]) -> uuid.UUID:
            org_id, scope = pair
            return self.ledger.create(subject_id, scope, org_id, actor)

        def _revoke(grant: GrantLike) -> None:
            self.ledger.revoke(grant.id, actor)

        outcome = reconcile(
            desired_pairs,
            existing,
            key=lambda grant: (int(grant.grantee_org_id), grant.scope),
            create=_create,
            revoke=_revoke,
        )

        result = ReconcileResult(
            subject_id=subject_id,
            desired_org_ids=effective,
            managed_scopes=self.managed_scopes,
            created=[
                GrantChange(grant_id=grant_id, subject_id=subject_id, scope=scope, organization_id=org_id)
                for (org_id, scope), grant_id in outcome.created
            ],
            revoked=[
                GrantChange(
                    grant_id=grant.id,
                    subject_id=subject_id,
                    scope=grant.scope,
                    organization_id=int(grant.grantee_org_id),
                )
                for grant in outcome.revoked
            ],
        )

        if result.is_noop:
            increment_metric(METRIC_RECONCILE_NOOP)
        else:
            if result.created:
                increment_metric(METRIC_GRANT_CREATED, len(result.created))
            if result.revoked:
                increment_metric(METRIC_GRANT_REVOKED, len(result.revoked))
        log_structured(
            "grants.reconciled",
            operation="grants.reconcile",
            created=len(result.created),
            revoked=len(result.revoked),
        )
        return result
