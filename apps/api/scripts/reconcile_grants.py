import argparse
from dataclasses import dataclass

from sqlalchemy.orm import Session

from core.config import get_settings
from core.db import SessionLocal
from core.deps import build_consent_service, get_audit_sink
from core.errors import ConsentConflictError


@dataclass
class SweepSummary:
    subjects: int = 0
    created: int = 0
    revoked: int = 0
    conflicts: int = 0


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Re-apply each subject's current consent to the access-grant ledger."
    )
    parser.add_argument(
        "--subject",
        action="append",
        default=[],
        help="Subject id to reconcile; repeatable. Defaults to every subject with a consent record.",
    )
    parser.add_argument(
        "--actor",
        default="grant-sweep",
        help="Actor recorded on grant changes (default: grant-sweep).",
    )
    return parser.parse_args()


def sweep(db: Session, subject_ids: list[str] | None, actor: str) -> SweepSummary:
    settings = get_settings()
    service = build_consent_service(db, get_audit_sink())
    subjects = subject_ids or service.store.list_subject_ids(service.consent_kind)
    summary = SweepSummary()
    for subject_id in subjects:
        try:
            result = service.reconcile_subject_grants(
                subject_id,
                actor=actor,
                exclude_org_ids=settings.excluded_org_ids,
            )
        except ConsentConflictError:
            # A concurrent write already reconciled this subject.
            summary.conflicts += 1
            continue
        summary.subjects += 1
        summary.created += len(result.created)
        summary.revoked += len(result.revoked)
    return summary


def main() -> None:
    args = parse_args()
    db = SessionLocal()
    try:
        summary = sweep(db, args.subject, args.actor)
        print("Subjects reconciled:", summary.subjects)
        print("Grants created:", summary.created)
        print("Grants revoked:", summary.revoked)
        print("Skipped on conflict:", summary.conflicts)
    finally:
        db.close()


if __name__ == "__main__":
    main()
