import unittest
import uuid
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from core.audit import DatabaseAuditSink
from core.consent_resolver import as_utc
from core.consent_service import ConsentLifecycleService
from core.errors import ConsentConflictError, ConsentInvariantError, ConsentNotFoundError
from core.failure_modes import failure_policy
from core.grant_ledger import SqlGrantLedger
from core.observability import (
    COUNTERS,
    METRIC_AUDIT_WRITE_FAILED,
    METRIC_CONSENT_CONFLICT,
    METRIC_UNEXPECTED_EXCEPTION,
)
from models.access_grant import AccessGrant
from models.audit import AuditEvent
from models.consent import ConsentOrgOverride, ConsentRecord, ConsentScopeValue, ConsentStatus
from models.organization import ParticipatingOrganization
from tests._helpers import ACTOR, FixedClock, RecordingAuditSink, make_memory_session, seed_organizations

SCOPES = ("view", "update_contact")
SUBJECT = "subject-42"
OPERATOR_ORG = 10


class ConsentLifecycleTestCase(unittest.TestCase):
    def setUp(self) -> None:
        COUNTERS.reset()
        self.db, self.engine = make_memory_session()
        seed_organizations(
            self.db,
            [(1, "Alder Clinic"), (2, "Birch Health"), (3, "Cedar Care"), (OPERATOR_ORG, "Operator Org")],
            inactive=[(20, "Dormant Dental")],
        )
        self.clock = FixedClock()
        self.audit = RecordingAuditSink()
        self.service = self._service()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _service(self, **overrides) -> ConsentLifecycleService:
        options = dict(expiry_days=365, managed_scopes=SCOPES, audit=self.audit, clock=self.clock)
        options.update(overrides)
        return ConsentLifecycleService(self.db, **options)

    def _save(self, scope, allowed=(), blocked=(), subject_id=SUBJECT, **kwargs):
        kwargs.setdefault("actor", ACTOR)
        kwargs.setdefault("method", "in_person")
        kwargs.setdefault("exclude_org_ids", (OPERATOR_ORG,))
        return self.service.save(subject_id, scope, allowed, blocked, **kwargs)

    def _granted_orgs(self, subject_id: str = SUBJECT) -> set[int]:
        grants = SqlGrantLedger(self.db).list_active(subject_id, SCOPES)
        pairs = {(grant.grantee_org_id, grant.scope) for grant in grants}
        orgs = {org_id for org_id, _ in pairs}
        self.assertEqual(pairs, {(org_id, scope) for org_id in orgs for scope in SCOPES})
        return orgs

    def _consents(self, subject_id: str = SUBJECT) -> list[ConsentRecord]:
        return list(self.db.scalars(select(ConsentRecord).where(ConsentRecord.subject_id == subject_id)).all())

    def _active_consents(self, subject_id: str = SUBJECT) -> list[ConsentRecord]:
        return [record for record in self._consents(subject_id) if record.status == ConsentStatus.ACTIVE]


class SaveConsentTests(ConsentLifecycleTestCase):
    def test_first_consent_all_orgs_grants_every_unblocked_participant(self) -> None:
        result = self._save("all_orgs", blocked=[2])

        consent = result.consent
        self.assertIsNone(result.previous_consent)
        self.assertEqual(consent.status, ConsentStatus.ACTIVE)
        self.assertEqual(consent.scope, ConsentScopeValue.ALL_ORGS)
        self.assertEqual(consent.captured_by, ACTOR)
        self.assertEqual(consent.captured_method, "in_person")
        self.assertEqual(as_utc(consent.expires_at), as_utc(consent.created_at) + timedelta(days=365))
        self.assertEqual(self._granted_orgs(), {1, 3})
        self.assertEqual(result.resolution.allowed_org_ids, [1, 3])

        overrides = list(self.db.scalars(select(ConsentOrgOverride)).all())
        self.assertEqual([(row.organization_id, row.allowed) for row in overrides], [(2, False)])
        self.assertEqual(self.audit.actions().count("grant_created"), 4)
        self.assertIn("consent_created", self.audit.actions())

    def test_all_orgs_without_blocks_covers_every_active_org_except_operator(self) -> None:
        self._save("all_orgs")
        self.assertEqual(self._granted_orgs(), {1, 2, 3})

    def test_new_decision_supersedes_the_active_consent(self) -> None:
        first = self._save("all_orgs").consent
        first_id = first.id
        second = self._save("selected_orgs", allowed=[3])

        self.assertEqual(second.previous_consent.id, first_id)
        previous = self.db.get(ConsentRecord, first_id)
        self.assertEqual(previous.status, ConsentStatus.REVOKED)
        self.assertEqual(previous.revoked_by, ACTOR)
        self.assertIsNotNone(previous.revoked_at)
        self.assertEqual(len(self._active_consents()), 1)
        self.assertEqual(self._granted_orgs(), {3})
        self.assertGreater(as_utc(second.consent.created_at), as_utc(previous.created_at))
        self.assertEqual(self.service.get_effective_consent(SUBJECT).consent.id, second.consent.id)

        actions = self.audit.actions()
        for action in ("consent_revoked", "consent_updated", "consent_org_updated", "grant_revoked"):
            self.assertIn(action, actions)

    def test_widen_then_narrow_keeps_the_surviving_grants(self) -> None:
        first_id = self._save("all_orgs").consent.id
        self.assertEqual(self._granted_orgs(), {1, 2, 3})
        kept = {
            grant.id
            for grant in SqlGrantLedger(self.db).list_active(SUBJECT, SCOPES)
            if grant.grantee_org_id == 1
        }

        result = self._save("selected_orgs", allowed=[1])

        self.assertEqual(self._granted_orgs(), {1})
        self.assertEqual({grant.id for grant in SqlGrantLedger(self.db).list_active(SUBJECT, SCOPES)}, kept)
        self.assertEqual(result.reconciliation.created, [])
        self.assertEqual(len(result.reconciliation.revoked), 4)
        self.assertEqual(self.db.get(ConsentRecord, first_id).status, ConsentStatus.REVOKED)

    def test_excluded_operator_org_is_never_granted_nor_reported_allowed(self) -> None:
        result = self.service.save(
            SUBJECT, "all_orgs", actor=ACTOR, method="portal", exclude_org_ids=[OPERATOR_ORG]
        )
        self.assertTrue(self.service.consent_allows_org(SUBJECT, OPERATOR_ORG))
        self.assertFalse(self.service.consent_allows_org(SUBJECT, OPERATOR_ORG, exclude_org_ids=[OPERATOR_ORG]))
        self.assertTrue(self.service.consent_allows_org(SUBJECT, 1, exclude_org_ids=[OPERATOR_ORG]))
        self.assertNotIn(OPERATOR_ORG, result.reconciliation.desired_org_ids)
        self.assertEqual(self._granted_orgs(), {1, 2, 3})

    def test_scope_none_withdraws_all_grants_and_writes_no_overrides(self) -> None:
        self._save("all_orgs")
        result = self._save("none")
        self.assertEqual(self._granted_orgs(), set())
        self.assertEqual(self.service.list_consent_orgs(result.consent.id), [])
        self.assertFalse(self.service.consent_allows_org(SUBJECT, 1))
        self.assertEqual(len(result.reconciliation.revoked), 6)

    def test_saving_the_same_decision_again_leaves_grants_untouched(self) -> None:
        self._save("selected_orgs", allowed=[1, 2])
        before = {grant.id for grant in SqlGrantLedger(self.db).list_active(SUBJECT, SCOPES)}
        result = self._save("selected_orgs", allowed=[2, 1])
        after = {grant.id for grant in SqlGrantLedger(self.db).list_active(SUBJECT, SCOPES)}
        self.assertTrue(result.reconciliation.is_noop)
        self.assertEqual(before, after)
        self.assertNotIn("consent_org_updated", self.audit.actions())

    def test_invalid_choices_are_rejected_before_any_write(self) -> None:
        with self.assertRaises(ConsentInvariantError):
            self._save("none", allowed=[1])
        with self.assertRaises(ConsentInvariantError):
            self._save("selected_orgs", allowed=[1], blocked=[1])
        with self.assertRaises(ConsentInvariantError):
            self._save("everyone")
        with self.assertRaises(ConsentInvariantError):
            self._save("all_orgs", actor="  ")
        self.assertEqual(self._consents(), [])
        self.assertEqual(self.audit.events, [])

    def test_values_wider_than_their_columns_are_rejected_before_any_write(self) -> None:
        for kwargs in (
            {"subject_id": "s" * 129},
            {"actor": "a" * 129},
            {"method": "m" * 65},
            {"policy_version": "v" * 65},
        ):
            with self.subTest(field=next(iter(kwargs))):
                with self.assertRaises(ConsentInvariantError) as ctx:
                    self._save("all_orgs", **kwargs)
                self.assertEqual(failure_policy(ctx.exception).http_status, 422)
                self.assertFalse(failure_policy(ctx.exception).retryable)
        self.assertEqual(self.db.scalar(select(func.count()).select_from(ConsentRecord)), 0)
        self.assertEqual(self.db.scalar(select(func.count()).select_from(AccessGrant)), 0)

        result = self._save("all_orgs", subject_id="s" * 128, actor="a" * 128)
        self.assertEqual(result.consent.captured_by, "a" * 128)

    def test_other_subjects_are_isolated(self) -> None:
        self._save("all_orgs", subject_id="subject-a")
        self._save("none", subject_id="subject-b")
        self.assertEqual(self._granted_orgs("subject-a"), {1, 2, 3})
        self.assertEqual(self._granted_orgs("subject-b"), set())
        self.assertEqual(len(self._active_consents("subject-a")), 1)

    def test_unmanaged_grants_survive_consent_changes(self) -> None:
        self.db.add(AccessGrant(subject_id=SUBJECT, scope="billing", grantee_org_id=1, granted_by="billing-sync"))
        self.db.add(AccessGrant(subject_id=SUBJECT, scope="view", grantee_user_id="user-5", granted_by="staff"))
        self.db.commit()
        self._save("all_orgs")
        self._save("none")
        remaining = SqlGrantLedger(self.db).list_for_subject(SUBJECT)
        self.assertEqual(
            sorted((grant.scope, grant.grantee_org_id, grant.grantee_user_id) for grant in remaining),
            [("billing", 1, None), ("view", None, "user-5")],
        )

    def test_history_is_append_only(self) -> None:
        for scope in ("all_orgs", "none", "selected_orgs"):
            self._save(scope)
        consents = self._consents()
        self.assertEqual(len(consents), 3)
        self.assertEqual(sorted(record.status.value for record in consents), ["active", "revoked", "revoked"])

    def test_restrictions_notes_and_policy_version_are_stored(self) -> None:
        result = self._save(
            "all_orgs",
            notes="signed paper form",
            policy_version="2026-01",
            restrictions={"exclude_categories": ["behavioral"]},
        )
        record = self.db.get(ConsentRecord, result.consent.id)
        self.assertEqual(record.notes, "signed paper form")
        self.assertEqual(record.policy_version, "2026-01")
        self.assertEqual(record.restrictions, {"exclude_categories": ["behavioral"]})


class RevokeConsentTests(ConsentLifecycleTestCase):
    def test_revoke_withdraws_every_managed_grant(self) -> None:
        consent_id = self._save("all_orgs").consent.id
        result = self.service.revoke(consent_id, actor="staff-9", reason="patient request")

        self.assertEqual(result.consent.status, ConsentStatus.REVOKED)
        self.assertEqual(result.consent.revoked_by, "staff-9")
        self.assertEqual(result.consent.notes, "patient request")
        self.assertEqual(self._granted_orgs(), set())
        self.assertEqual(len(result.reconciliation.revoked), 6)
        self.assertEqual(self.service.get_effective_consent(SUBJECT).effective_status, "revoked")
        self.assertIn("consent_revoked", self.audit.actions())

    def test_revoke_without_reason_keeps_notes(self) -> None:
        consent_id = self._save("all_orgs", notes="kiosk").consent.id
        result = self.service.revoke(consent_id, actor=ACTOR)
        self.assertEqual(result.consent.notes, "kiosk")

    def test_revoking_twice_reports_already_revoked(self) -> None:
        consent_id = self._save("all_orgs").consent.id
        self.service.revoke(consent_id, actor=ACTOR)
        with self.assertRaises(ConsentInvariantError) as ctx:
            self.service.revoke(consent_id, actor=ACTOR)
        self.assertTrue(ctx.exception.already_revoked)

    def test_revoking_unknown_consent_is_not_found(self) -> None:
        with self.assertRaises(ConsentNotFoundError):
            self.service.revoke(uuid.uuid4(), actor=ACTOR)

    def test_consent_of_another_kind_is_not_visible(self) -> None:
        consent_id = self._save("all_orgs").consent.id
        other_kind = self._service(consent_kind="research")
        with self.assertRaises(ConsentNotFoundError):
            other_kind.revoke(consent_id, actor=ACTOR)
        self.assertIsNone(other_kind.get_effective_consent(SUBJECT).consent)


class OrgOverrideTests(ConsentLifecycleTestCase):
    def test_blocking_and_unblocking_an_org_reconciles_grants(self) -> None:
        consent_id = self._save("all_orgs").consent.id

        blocked = self.service.update_org_override(consent_id, 3, False, actor=ACTOR, exclude_org_ids=(OPERATOR_ORG,))
        self.assertIsNone(blocked.previous_allowed)
        self.assertEqual(self._granted_orgs(), {1, 2})
        self.assertEqual(len(blocked.reconciliation.revoked), 2)

        unblocked = self.service.update_org_override(
            consent_id, 3, True, actor="staff-9", reason="called in", exclude_org_ids=(OPERATOR_ORG,)
        )
        self.assertFalse(unblocked.previous_allowed)
        self.assertEqual(self._granted_orgs(), {1, 2, 3})

        rows = self.service.list_consent_orgs(consent_id)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].organization_name, "Cedar Care")
        self.assertEqual(rows[0].set_by, "staff-9")
        self.assertEqual(rows[0].reason, "called in")
        self.assertEqual(self.audit.actions().count("consent_org_updated"), 2)

    def test_override_flip_under_selected_orgs_revokes_grants_without_resave(self) -> None:
        consent_id = self._save("selected_orgs", allowed=[1, 2]).consent.id
        self.assertEqual(self._granted_orgs(), {1, 2})

        result = self.service.update_org_override(consent_id, 1, False, actor=ACTOR)

        self.assertTrue(result.previous_allowed)
        self.assertEqual(self._granted_orgs(), {2})
        self.assertEqual({change.organization_id for change in result.reconciliation.revoked}, {1})
        self.assertFalse(self.service.consent_allows_org(SUBJECT, 1))
        self.assertEqual(len(self._consents()), 1)

    def test_selected_orgs_override_adds_an_organization(self) -> None:
        consent_id = self._save("selected_orgs", allowed=[1]).consent.id
        self.service.update_org_override(consent_id, 2, True, actor=ACTOR)
        self.assertEqual(self._granted_orgs(), {1, 2})
        self.assertTrue(self.service.consent_allows_org(SUBJECT, 2))

    def test_override_requires_an_active_consent(self) -> None:
        consent_id = self._save("all_orgs").consent.id
        self._save("none")
        with self.assertRaises(ConsentInvariantError) as ctx:
            self.service.update_org_override(consent_id, 1, False, actor=ACTOR)
        self.assertTrue(ctx.exception.already_revoked)

    def test_override_is_rejected_for_scope_none(self) -> None:
        consent_id = self._save("none").consent.id
        with self.assertRaises(ConsentInvariantError) as ctx:
            self.service.update_org_override(consent_id, 1, True, actor=ACTOR)
        self.assertFalse(ctx.exception.already_revoked)
        self.assertEqual(self.service.list_consent_orgs(consent_id), [])

    def test_list_orgs_for_unknown_consent_is_not_found(self) -> None:
        with self.assertRaises(ConsentNotFoundError):
            self.service.list_consent_orgs(uuid.uuid4())


class RenewConsentTests(ConsentLifecycleTestCase):
    def test_renew_refreshes_expiry_and_carries_choices_forward(self) -> None:
        original = self._save("all_orgs", blocked=[2], notes="front desk", policy_version="v1").consent
        original_id = original.id
        self.db.add(ParticipatingOrganization(id=4, name="Dogwood Labs", organization_type="lab"))
        self.db.commit()

        self.clock.advance(days=300)
        result = self.service.renew(original_id, actor="staff-9", method="portal", exclude_org_id=OPERATOR_ORG)

        renewed = result.consent
        self.assertNotEqual(renewed.id, original_id)
        self.assertEqual(result.previous_consent.id, original_id)
        self.assertEqual(self.db.get(ConsentRecord, original_id).status, ConsentStatus.REVOKED)
        self.assertEqual(renewed.scope, ConsentScopeValue.ALL_ORGS)
        self.assertEqual(renewed.notes, "front desk")
        self.assertEqual(renewed.policy_version, "v1")
        self.assertEqual(renewed.captured_method, "portal")
        self.assertEqual(as_utc(renewed.expires_at), self.clock() + timedelta(days=365))
        self.assertEqual(
            [(row.organization_id, row.allowed) for row in self.service.list_consent_orgs(renewed.id)],
            [(2, False)],
        )
        self.assertEqual(self._granted_orgs(), {1, 3, 4})
        self.assertIn("consent_renewed", self.audit.actions())

    def test_renew_accepts_new_policy_version(self) -> None:
        consent_id = self._save("selected_orgs", allowed=[1], policy_version="v1").consent.id
        renewed = self.service.renew(consent_id, actor=ACTOR, method="portal", policy_version="v2").consent
        self.assertEqual(renewed.policy_version, "v2")
        self.assertEqual(self._granted_orgs(), {1})

    def test_renew_of_revoked_consent_is_rejected(self) -> None:
        consent_id = self._save("all_orgs").consent.id
        self.service.revoke(consent_id, actor=ACTOR)
        with self.assertRaises(ConsentInvariantError) as ctx:
            self.service.renew(consent_id, actor=ACTOR, method="portal")
        self.assertTrue(ctx.exception.already_revoked)

    def test_renew_of_unknown_consent_is_not_found(self) -> None:
        with self.assertRaises(ConsentNotFoundError):
            self.service.renew(uuid.uuid4(), actor=ACTOR, method="portal")


class ExpiryAndRecoveryTests(ConsentLifecycleTestCase):
    def test_expired_consent_is_reported_and_authorizes_nothing(self) -> None:
        self._save("all_orgs")
        self.clock.advance(days=366)

        effective = self.service.get_effective_consent(SUBJECT)
        self.assertEqual(effective.status, "active")
        self.assertEqual(effective.effective_status, "expired")
        self.assertTrue(effective.is_expired)
        self.assertFalse(self.service.consent_allows_org(SUBJECT, 1))

        result = self.service.reconcile_subject_grants(SUBJECT, actor="expiry-sweep", exclude_org_ids=(OPERATOR_ORG,))
        self.assertEqual(len(result.revoked), 6)
        self.assertEqual(self._granted_orgs(), set())

    def test_override_on_expired_consent_grants_nothing(self) -> None:
        consent_id = self._save("selected_orgs", allowed=[1]).consent.id
        self.clock.advance(days=400)
        result = self.service.update_org_override(consent_id, 2, True, actor=ACTOR)
        self.assertEqual(result.reconciliation.created, [])
        self.assertEqual(self._granted_orgs(), set())

    def test_consent_without_expiry_never_lapses(self) -> None:
        consent_id = self._save("all_orgs").consent.id
        record = self.db.get(ConsentRecord, consent_id)
        record.expires_at = None
        self.db.commit()
        self.clock.advance(days=5000)
        self.assertTrue(self.service.get_effective_consent(SUBJECT).is_active)
        self.assertTrue(self.service.consent_allows_org(SUBJECT, 1))

    def test_reconcile_restores_drifted_grants_and_is_idempotent(self) -> None:
        self._save("selected_orgs", allowed=[1, 2])
        for grant in SqlGrantLedger(self.db).list_active(SUBJECT, SCOPES):
            if grant.grantee_org_id == 2:
                grant.revoked_at = self.clock()
        self.db.add(AccessGrant(subject_id=SUBJECT, scope="view", grantee_org_id=3, granted_by="manual"))
        self.db.commit()

        repaired = self.service.reconcile_subject_grants(SUBJECT, actor=ACTOR)
        self.assertEqual(len(repaired.created), 2)
        self.assertEqual(len(repaired.revoked), 1)
        self.assertEqual(self._granted_orgs(), {1, 2})

        again = self.service.reconcile_subject_grants(SUBJECT, actor=ACTOR)
        self.assertTrue(again.is_noop)

    def test_reconcile_without_consent_withdraws_managed_grants(self) -> None:
        self.db.add(AccessGrant(subject_id=SUBJECT, scope="view", grantee_org_id=1, granted_by="manual"))
        self.db.commit()
        result = self.service.reconcile_subject_grants(SUBJECT, actor=ACTOR)
        self.assertEqual(len(result.revoked), 1)
        self.assertEqual(self._granted_orgs(), set())


class ReadModelTests(ConsentLifecycleTestCase):
    def test_overview_partitions_directory_without_operator_or_inactive_orgs(self) -> None:
        self._save("all_orgs", blocked=[2])
        overview = self.service.get_consent_overview(SUBJECT, exclude_org_id=OPERATOR_ORG)
        self.assertTrue(overview.effective.is_active)
        self.assertEqual(overview.resolution.allowed_org_ids, [1, 3])
        self.assertEqual(overview.resolution.blocked_org_ids, [2])
        self.assertEqual(
            [selection.name for selection in overview.resolution.selections],
            ["Alder Clinic", "Birch Health", "Cedar Care"],
        )
        self.assertEqual([row.organization_id for row in overview.overrides], [2])

    def test_overview_without_consent_blocks_everyone(self) -> None:
        overview = self.service.get_consent_overview(SUBJECT)
        self.assertIsNone(overview.effective.consent)
        self.assertEqual(overview.resolution.allowed_org_ids, [])
        self.assertEqual(len(overview.resolution.blocked_org_ids), 4)

    def test_consent_allows_org_checks_directory_membership(self) -> None:
        self._save("all_orgs")
        self.assertTrue(self.service.consent_allows_org(SUBJECT, 1))
        self.assertFalse(self.service.consent_allows_org(SUBJECT, 20))
        self.assertFalse(self.service.consent_allows_org(SUBJECT, 999))
        self.assertFalse(self.service.consent_allows_org(SUBJECT, None))
        self.assertFalse(self.service.consent_allows_org("nobody", 1))

    def test_override_listing_is_newest_first(self) -> None:
        consent_id = self._save("all_orgs", blocked=[1]).consent.id
        self.clock.advance(minutes=5)
        self.service.update_org_override(consent_id, 3, False, actor=ACTOR)
        rows = self.service.list_consent_orgs(consent_id)
        self.assertEqual([row.organization_id for row in rows], [3, 1])


class TransactionBoundaryTests(ConsentLifecycleTestCase):
    def test_failure_during_grant_writes_rolls_back_the_whole_save(self) -> None:
        first_id = self._save("selected_orgs", allowed=[1]).consent.id
        original_create = SqlGrantLedger.create
        calls = {"count": 0}

        def flaky_create(ledger, subject_id, scope, grantee_org_id, actor):
            calls["count"] += 1
            if calls["count"] > 1:
                raise RuntimeError("grant store unavailable")
            return original_create(ledger, subject_id, scope, grantee_org_id, actor)

        with patch.object(SqlGrantLedger, "create", flaky_create):
            with self.assertRaises(RuntimeError):
                self._save("all_orgs")

        self.assertEqual(self.db.get(ConsentRecord, first_id).status, ConsentStatus.ACTIVE)
        self.assertEqual(len(self._consents()), 1)
        self.assertEqual(self._granted_orgs(), {1})
        self.assertEqual(COUNTERS.value(METRIC_UNEXPECTED_EXCEPTION), 1)
        self.assertNotIn("consent_updated", self.audit.actions())

        self._save("all_orgs")
        self.assertEqual(self._granted_orgs(), {1, 2, 3})

    def test_losing_the_single_active_race_raises_retryable_conflict(self) -> None:
        first_id = self._save("all_orgs").consent.id
        with patch.object(self.service.store, "latest_consent", return_value=None):
            with self.assertRaises(ConsentConflictError) as ctx:
                self._save("none")
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.subject_id, SUBJECT)
        self.assertEqual(COUNTERS.value(METRIC_CONSENT_CONFLICT), 1)
        self.assertEqual(self.db.get(ConsentRecord, first_id).status, ConsentStatus.ACTIVE)
        self.assertEqual(len(self._consents()), 1)
        self.assertEqual(self._granted_orgs(), {1, 2, 3})


class AuditDeliveryTests(ConsentLifecycleTestCase):
    def test_audit_failure_does_not_undo_the_committed_change(self) -> None:
        self.audit.fail_actions = {"consent_created"}
        result = self._save("all_orgs")
        self.assertEqual(self.db.get(ConsentRecord, result.consent.id).status, ConsentStatus.ACTIVE)
        self.assertEqual(COUNTERS.value(METRIC_AUDIT_WRITE_FAILED), 1)
        self.assertNotIn("consent_created", self.audit.actions())
        self.assertEqual(self.audit.actions().count("grant_created"), 6)

    def test_database_sink_writes_one_row_per_event(self) -> None:
        sink = DatabaseAuditSink(sessionmaker(bind=self.engine, autocommit=False, autoflush=False))
        service = self._service(audit=sink)
        result = service.save(SUBJECT, "selected_orgs", [1], actor=ACTOR, method="portal")

        events = list(self.db.scalars(select(AuditEvent).order_by(AuditEvent.action)).all())
        self.assertEqual([event.action for event in events], ["consent_created", "grant_created", "grant_created"])
        consent_event = next(event for event in events if event.action == "consent_created")
        self.assertEqual(consent_event.entity_ref, f"person_consents:{result.consent.id}")
        self.assertEqual(consent_event.actor, ACTOR)
        self.assertEqual(consent_event.meta["allowed_org_ids"], [1])
        self.assertEqual(consent_event.meta["scope"], "selected_orgs")

    def test_audit_events_carry_grant_details(self) -> None:
        result = self._save("selected_orgs", allowed=[3])
        grant_events = [event for event in self.audit.events if event.action == "grant_created"]
        self.assertEqual({event.meta["organization_id"] for event in grant_events}, {3})
        self.assertEqual({event.meta["consent_id"] for event in grant_events}, {str(result.consent.id)})
        self.assertTrue(all(event.entity_type == "person_access_grants" for event in grant_events))

    def test_failed_operation_emits_no_audit(self) -> None:
        with self.assertRaises(ConsentNotFoundError):
            self.service.revoke(uuid.uuid4(), actor=ACTOR)
        self.assertEqual(self.audit.events, [])
        self.assertEqual(int(self.db.scalar(select(func.count()).select_from(AuditEvent)) or 0), 0)


if __name__ == "__main__":
    unittest.main()
