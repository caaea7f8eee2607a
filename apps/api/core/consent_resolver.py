"""Pure consent resolution.

Turns a consent scope plus its per-organization override rows into an
allowed/blocked partition of the participating organizations, and derives the
expiry-aware status of a consent record. Nothing here performs I/O or reads
the clock; callers pass ``now`` explicitly.
"""
from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import ClassVar, Protocol, Union

from core.errors import ConsentInvariantError
from models.consent import ConsentRecord, ConsentScopeValue, ConsentStatus

EFFECTIVE_STATUS_EXPIRED = "expired"


class OrganizationLike(Protocol):
    id: int
    name: str


class OverrideLike(Protocol):
    organization_id: int
    allowed: bool


@dataclass(frozen=True)
class NoSharing:
    value: ClassVar[ConsentScopeValue] = ConsentScopeValue.NONE

    def override_rows(self) -> list[tuple[int, bool]]:
        return []


@dataclass(frozen=True)
class AllOrganizations:
    """Blanket sharing minus an explicit block-list."""

    blocked: frozenset[int] = frozenset()
    value: ClassVar[ConsentScopeValue] = ConsentScopeValue.ALL_ORGS

    def override_rows(self) -> list[tuple[int, bool]]:
        return [(org_id, False) for org_id in sorted(self.blocked)]


@dataclass(frozen=True)
class SelectedOrganizations:
    """Sharing restricted to an explicit allow-list."""

    allowed: frozenset[int] = frozenset()
    value: ClassVar[ConsentScopeValue] = ConsentScopeValue.SELECTED_ORGS

    def override_rows(self) -> list[tuple[int, bool]]:
        return [(org_id, True) for org_id in sorted(self.allowed)]


ConsentScope = Union[NoSharing, AllOrganizations, SelectedOrganizations]


@dataclass(frozen=True)
class OrgSelection:
    id: int
    name: str | None
    organization_type: str | None
    partnership_type: str | None
    allowed: bool


@dataclass(frozen=True)
class OrgResolution:
    allowed_org_ids: list[int] = field(default_factory=list)
    blocked_org_ids: list[int] = field(default_factory=list)
    selections: list[OrgSelection] = field(default_factory=list)


@dataclass(frozen=True)
class EffectiveConsent:
    consent: ConsentRecord | None
    scope: str | None
    status: str | None
    effective_status: str | None
    expires_at: datetime | None
    is_expired: bool

    @property
    def is_active(self) -> bool:
        return self.effective_status == ConsentStatus.ACTIVE.value


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_scope_value(value: ConsentScopeValue | str | None) -> ConsentScopeValue:
    if value is None:
        return ConsentScopeValue.NONE
    if isinstance(value, ConsentScopeValue):
        return value
    try:
        return ConsentScopeValue(str(value).strip().lower())
    except ValueError:
        raise ConsentInvariantError(f"Unrecognized consent scope: {value!r}") from None


def build_scope(
    scope_value: ConsentScopeValue | str | None,
    allowed_org_ids: Iterable[int] = (),
    blocked_org_ids: Iterable[int] = (),
) -> ConsentScope:
    """
    Build a scope from a caller's explicit choices, rejecting combinations the
    data model cannot represent.

    Under ``all_orgs`` the allowed list is informational and only the blocked
    list is persisted; under ``selected_orgs`` the reverse. Under ``none`` both
    lists must be empty.

    Raises:
        ConsentInvariantError: unknown scope, an organization present in both
            lists, or any organization supplied for scope ``none``.
    """
    value = parse_scope_value(scope_value)
    allowed = frozenset(int(org_id) for org_id in allowed_org_ids)
    blocked = frozenset(int(org_id) for org_id in blocked_org_ids)

    if value == ConsentScopeValue.NONE:
        if allowed or blocked:
            raise ConsentInvariantError("Organization choices cannot be recorded for scope 'none'")
        return NoSharing()

    overlap = allowed & blocked
    if overlap:
        raise ConsentInvariantError(
            f"Organizations cannot be both allowed and blocked: {sorted(overlap)}"
        )
    if value == ConsentScopeValue.ALL_ORGS:
        return AllOrganizations(blocked=blocked)
    return SelectedOrganizations(allowed=allowed)


def scope_from_overrides(
    scope_value: ConsentScopeValue | str | None,
    overrides: Iterable[OverrideLike],
) -> ConsentScope:
    explicit: dict[int, bool] = {}
    for row in overrides:
        explicit[int(row.organization_id)] = bool(row.allowed)

    value = parse_scope_value(scope_value)
    if value == ConsentScopeValue.ALL_ORGS:
        return AllOrganizations(blocked=frozenset(org for org, allowed in explicit.items() if not allowed))
    if value == ConsentScopeValue.SELECTED_ORGS:
        return SelectedOrganizations(allowed=frozenset(org for org, allowed in explicit.items() if allowed))
    return NoSharing()


def scope_allows(scope: ConsentScope, org_id: int) -> bool:
    if isinstance(scope, AllOrganizations):
        return org_id not in scope.blocked
    if isinstance(scope, SelectedOrganizations):
        return org_id in scope.allowed
    if isinstance(scope, NoSharing):
        return False
    raise TypeError(f"Unhandled consent scope type: {type(scope).__name__}")


def resolve_scope(scope: ConsentScope, organizations: Sequence[OrganizationLike]) -> OrgResolution:
    allowed_org_ids: list[int] = []
    blocked_org_ids: list[int] = []
    selections: list[OrgSelection] = []

    for org in organizations:
        allowed = scope_allows(scope, org.id)
        if allowed:
            allowed_org_ids.append(org.id)
        else:
            blocked_org_ids.append(org.id)
        selections.append(
            OrgSelection(
                id=org.id,
                name=getattr(org, "name", None),
                organization_type=getattr(org, "organization_type", None),
                partnership_type=getattr(org, "partnership_type", None),
                allowed=allowed,
            )
        )

    return OrgResolution(
        allowed_org_ids=allowed_org_ids,
        blocked_org_ids=blocked_org_ids,
        selections=selections,
    )


def resolve_consent_orgs(
    scope_value: ConsentScopeValue | str | None,
    organizations: Sequence[OrganizationLike],
    overrides: Iterable[OverrideLike],
) -> OrgResolution:
    return resolve_scope(scope_from_overrides(scope_value, overrides), organizations)


def effective_consent(record: ConsentRecord | None, now: datetime) -> EffectiveConsent:
    if record is None:
        return EffectiveConsent(
            consent=None,
            scope=None,
            status=None,
            effective_status=None,
            expires_at=None,
            is_expired=False,
        )

    expires_at = as_utc(record.expires_at)
    # A consent without an expiry never lapses.
    is_expired = expires_at is not None and expires_at <= as_utc(now)
    status = ConsentStatus(record.status).value
    effective_status = (
        EFFECTIVE_STATUS_EXPIRED if status == ConsentStatus.ACTIVE.value and is_expired else status
    )
    return EffectiveConsent(
        consent=record,
        scope=ConsentScopeValue(record.scope).value,
        status=status,
        effective_status=effective_status,
        expires_at=expires_at,
        is_expired=is_expired,
    )
