from pathlib import Path

from alembic.config import Config as AlembicConfig
from alembic.script import ScriptDirectory
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import func, select, text

from core.config import get_settings
from core.db import engine
from core.observability import COUNTERS
from models.organization import ParticipatingOrganization

router = APIRouter(tags=["health"])
settings = get_settings()


def _current_alembic_heads() -> str:
    ini_path = Path(__file__).resolve().parent.parent / "alembic.ini"
    alembic_cfg = AlembicConfig(str(ini_path))
    script = ScriptDirectory.from_config(alembic_cfg)
    return ",".join(sorted(script.get_heads()))


def _directory_check() -> str:
    # An empty directory is reported but does not block readiness.
    try:
        with engine.connect() as conn:
            participating = conn.scalar(
                select(func.count())
                .select_from(ParticipatingOrganization)
                .where(ParticipatingOrganization.is_active.is_(True))
            )
    except Exception:
        return "failed"
    return "ok" if participating else "empty"


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/live")
def live():
    return {"status": "ok"}


@router.get("/ready")
def ready():
    checks: dict[str, str] = {}

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        checks["db"] = "ok"
    except Exception:
        checks["db"] = "failed"

    checks["organization_directory"] = _directory_check() if checks["db"] == "ok" else "skipped"

    expected_head = settings.expected_alembic_head
    if expected_head:
        try:
            current_head = _current_alembic_heads()
            checks["migration_head"] = "ok" if current_head == expected_head else "failed"
        except Exception:
            checks["migration_head"] = "failed"
    else:
        checks["migration_head"] = "skipped"

    failed_checks = [name for name, result in checks.items() if result == "failed"]
    if failed_checks:
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}


@router.get("/version")
def version():
    return {"name": settings.app_name, "version": settings.app_version, "version_hash": settings.version_hash}


@router.get("/metrics")
def metrics():
    return {"counters": COUNTERS.snapshot()}
