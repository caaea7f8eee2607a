import json
import logging
from pathlib import Path

from alembic.config import Config as AlembicConfig
from alembic.script import ScriptDirectory
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from core.config import get_settings
from core.contracts import ErrorCode, error_body
from core.db import Base, SessionLocal, engine
from core.errors import ConsentError
from core.failure_modes import FailureClass, failure_policy, record_operation_failure
from core.logging_utils import configure_logging, log_request, monotonic_ms, request_id_from_request
import models  # noqa: F401  ensure models are imported so tables are registered
from routers.consents import router as consents_router
from routers.health import router as health_router

settings = get_settings()
configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Consent Grants API",
    description=(
        "Records each subject's data-sharing consent and keeps organization access grants in line with it. "
        "Write routes require an `X-Actor-Id` header for attribution."
    ),
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    openapi_tags=[
        {"name": "consents", "description": "Consent lifecycle, organization overrides and grant reconciliation."},
        {"name": "health", "description": "Operational liveness and diagnostics."},
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["Content-Type", "X-Actor-Id", "X-Request-Id"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request_id_from_request(request)
    request.state.request_id = request_id
    started = monotonic_ms()
    response = await call_next(request)
    if response.status_code < 400 and response.headers.get("content-type", "").startswith("application/json"):
        body = b""
        async for chunk in response.body_iterator:
            body += chunk
        try:
            decoded = json.loads(body.decode("utf-8")) if body else None
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, dict) and ("data" in decoded or "error" in decoded):
            wrapped = decoded
        else:
            wrapped = {"data": decoded}
        response = JSONResponse(content=wrapped, status_code=response.status_code)
    response.headers["X-Request-Id"] = request_id
    elapsed = monotonic_ms() - started
    log_request(request_id, request.method, request.url.path, response.status_code, elapsed)
    return response


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _map_http_error_code(status_code: int, detail: str) -> ErrorCode:
    lowered = (detail or "").lower()
    if status_code == 404:
        return ErrorCode.NOT_FOUND
    if status_code == 401 and "missing" in lowered:
        return ErrorCode.AUTH_MISSING
    if status_code == 409:
        return ErrorCode.CONSENT_CONFLICT
    if status_code == 422:
        return ErrorCode.VALIDATION_ERROR
    return ErrorCode.INTERNAL_ERROR


def _consent_error_code(exc: ConsentError) -> ErrorCode:
    failure_class = failure_policy(exc).failure_class
    if failure_class == FailureClass.CONSENT_NOT_FOUND:
        return ErrorCode.NOT_FOUND
    if failure_class == FailureClass.CONSENT_CONFLICT:
        return ErrorCode.CONSENT_CONFLICT
    if getattr(exc, "already_revoked", False):
        return ErrorCode.ALREADY_REVOKED
    return ErrorCode.INVARIANT_VIOLATION


@app.exception_handler(ConsentError)
async def consent_error_handler(request: Request, exc: ConsentError):
    policy = failure_policy(exc)
    headers = {"Retry-After": "1"} if policy.retryable else None
    return JSONResponse(
        status_code=policy.http_status,
        content=error_body(_consent_error_code(exc), exc.message, _request_id(request)),
        headers=headers,
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    message = "Request could not be processed"
    if exc.status_code in {401, 404, 409, 422}:
        message = str(exc.detail) if isinstance(exc.detail, str) else message
    code = _map_http_error_code(exc.status_code, str(exc.detail))
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(code, message, _request_id(request)),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content=error_body(
            ErrorCode.VALIDATION_ERROR,
            "Request validation failed",
            _request_id(request),
        ),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    policy = failure_policy(exc)
    record_operation_failure(
        operation="http.request",
        exc=exc,
        extra_payload={"request_id": _request_id(request)},
    )
    if policy.failure_class == FailureClass.DB_DATA_REJECTED:
        code, message = ErrorCode.VALIDATION_ERROR, "Request validation failed"
    elif policy.http_status == 503:
        code, message = ErrorCode.SERVICE_UNAVAILABLE, "Service unavailable"
    else:
        code, message = ErrorCode.INTERNAL_ERROR, "Internal server error"
    headers = {"Retry-After": "1"} if policy.retryable else None
    return JSONResponse(
        status_code=policy.http_status,
        content=error_body(code, message, _request_id(request)),
        headers=headers,
    )


app.include_router(health_router)


@app.get("/")
def root():
    return {"status": "Consent Grants API running"}


app.include_router(consents_router)


def _current_alembic_heads() -> str:
    ini_path = Path(__file__).resolve().parent / "alembic.ini"
    alembic_cfg = AlembicConfig(str(ini_path))
    script = ScriptDirectory.from_config(alembic_cfg)
    return ",".join(sorted(script.get_heads()))


@app.on_event("startup")
async def on_startup() -> None:
    migration_heads = _current_alembic_heads()
    logger.info(
        "startup env=%s version_hash=%s migration_head=%s consent_kind=%s",
        settings.env,
        settings.version_hash,
        migration_heads,
        settings.consent_kind,
    )

    if settings.env == "prod" and not settings.expected_alembic_head:
        logger.warning("EXPECTED_ALEMBIC_HEAD is not set; skipping migration-head enforcement")
    if settings.expected_alembic_head and settings.expected_alembic_head != migration_heads:
        raise RuntimeError(
            f"migration head mismatch: expected {settings.expected_alembic_head}, found {migration_heads}"
        )
    if settings.env == "dev" and settings.auto_create_schema:
        Base.metadata.create_all(bind=engine)

    connectivity_session = SessionLocal()
    try:
        connectivity_session.execute(text("SELECT 1"))
    except Exception as exc:
        raise RuntimeError("database connectivity check failed") from exc
    finally:
        connectivity_session.close()

    if settings.operator_org_id is None:
        logger.warning("OPERATOR_ORG_ID is not set; no organization is excluded from grant reconciliation")
