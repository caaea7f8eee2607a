"""Desired-state vs. actual-state diffing.

``reconcile`` converges an actual collection onto a desired key set with the
minimal number of create and revoke calls. It holds no state of its own, so a
call interrupted part-way can simply be repeated with the same inputs.
"""
from __future__ import annotations

from collections.abc import Callable, Hashable, Iterable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)
T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class ReconcilePlan(Generic[K, T]):
    to_create: list[K] = field(default_factory=list)
    to_revoke: list[T] = field(default_factory=list)
    unchanged: list[T] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.to_create and not self.to_revoke


@dataclass(frozen=True)
class ReconcileOutcome(Generic[K, T, R]):
    created: list[tuple[K, R]] = field(default_factory=list)
    revoked: list[T] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.created and not self.revoked


def plan_reconciliation(
    desired: Iterable[K],
    actual: Iterable[T],
    key: Callable[[T], K],
) -> ReconcilePlan[K, T]:
    """
    Diff ``desired`` keys against ``actual`` items.

    An actual item is kept when its key is desired and no earlier item already
    claimed that key; every other actual item is scheduled for revocation, so
    duplicates collapse to one. Desired keys with no surviving item are
    scheduled for creation in the order ``desired`` lists them.
    """
    desired_order: list[K] = []
    desired_set: set[K] = set()
    for item_key in desired:
        if item_key not in desired_set:
            desired_set.add(item_key)
            desired_order.append(item_key)

    claimed: set[K] = set()
    to_revoke: list[T] = []
    unchanged: list[T] = []
    for item in actual:
        item_key = key(item)
        if item_key in desired_set and item_key not in claimed:
            claimed.add(item_key)
            unchanged.append(item)
        else:
            to_revoke.append(item)

    to_create = [item_key for item_key in desired_order if item_key not in claimed]
    return ReconcilePlan(to_create=to_create, to_revoke=to_revoke, unchanged=unchanged)


def reconcile(
    desired: Iterable[K],
    actual: Iterable[T],
    *,
    key: Callable[[T], K],
    create: Callable[[K], R],
    revoke: Callable[[T], object],
) -> ReconcileOutcome[K, T, R]:
    plan = plan_reconciliation(desired, actual, key)
    revoked: list[T] = []
    created: list[tuple[K, R]] = []
    # Revocations run before creations: an interrupted call never widens access.
    for item in plan.to_revoke:
        revoke(item)
        revoked.append(item)
    for item_key in plan.to_create:
        created.append((item_key, create(item_key)))
    return ReconcileOutcome(created=created, revoked=revoked)
