from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from sqlalchemy.exc import DataError, DBAPIError, IntegrityError, OperationalError

from core.errors import ConsentConflictError, ConsentInvariantError, ConsentNotFoundError
from core.logging_utils import log_structured
from core.observability import unexpected_exception_metric


class FailureClass(StrEnum):
    DB_UNAVAILABLE = "db.unavailable"
    DB_CONSTRAINT_VIOLATION = "db.constraint_violation"
    DB_DATA_REJECTED = "db.data_rejected"
    CONSENT_CONFLICT = "consent.conflict"
    CONSENT_NOT_FOUND = "consent.not_found"
    INVARIANT_VIOLATION = "consent.invariant_violation"
    UNEXPECTED_EXCEPTION = "unexpected.exception"


@dataclass(frozen=True)
class FailurePolicy:
    failure_class: FailureClass
    http_status: int
    retryable: bool


def classify_failure(exc: Exception) -> FailureClass:
    if isinstance(exc, ConsentConflictError):
        return FailureClass.CONSENT_CONFLICT
    if isinstance(exc, ConsentNotFoundError):
        return FailureClass.CONSENT_NOT_FOUND
    if isinstance(exc, ConsentInvariantError):
        return FailureClass.INVARIANT_VIOLATION
    if isinstance(exc, IntegrityError):
        return FailureClass.DB_CONSTRAINT_VIOLATION
    if isinstance(exc, DataError):
        return FailureClass.DB_DATA_REJECTED
    if isinstance(exc, (OperationalError, DBAPIError)):
        return FailureClass.DB_UNAVAILABLE
    return FailureClass.UNEXPECTED_EXCEPTION


def failure_policy(exc: Exception) -> FailurePolicy:
    failure_class = classify_failure(exc)
    if failure_class == FailureClass.DB_UNAVAILABLE:
        return FailurePolicy(failure_class=failure_class, http_status=503, retryable=True)
    if failure_class in {FailureClass.DB_CONSTRAINT_VIOLATION, FailureClass.CONSENT_CONFLICT}:
        return FailurePolicy(failure_class=failure_class, http_status=409, retryable=True)
    if failure_class == FailureClass.DB_DATA_REJECTED:
        return FailurePolicy(failure_class=failure_class, http_status=422, retryable=False)
    if failure_class == FailureClass.CONSENT_NOT_FOUND:
        return FailurePolicy(failure_class=failure_class, http_status=404, retryable=False)
    if failure_class == FailureClass.INVARIANT_VIOLATION:
        status = 409 if getattr(exc, "already_revoked", False) else 422
        return FailurePolicy(failure_class=failure_class, http_status=status, retryable=False)
    return FailurePolicy(failure_class=failure_class, http_status=500, retryable=False)


def failure_event_type(operation: str) -> str:
    return f"{operation}.failed"


def record_operation_failure(
    *,
    operation: str,
    exc: Exception,
    resource_id: uuid.UUID | str | None = None,
    extra_payload: dict[str, Any] | None = None,
) -> None:
    """Best-effort failure telemetry emitted after rollback boundaries."""
    payload: dict[str, Any] = {
        "operation": operation,
        "failure_class": classify_failure(exc).value,
        "error_type": exc.__class__.__name__,
    }
    if extra_payload:
        payload.update(extra_payload)
    if payload["failure_class"] == FailureClass.UNEXPECTED_EXCEPTION.value:
        unexpected_exception_metric(payload["error_type"], request_id=payload.get("request_id"))

    expected = payload["failure_class"] in {
        FailureClass.CONSENT_NOT_FOUND.value,
        FailureClass.INVARIANT_VIOLATION.value,
    }
    log_structured(
        failure_event_type(operation),
        level=logging.INFO if expected else logging.WARNING,
        operation=operation,
        failure_class=payload["failure_class"],
        error_class=payload["error_type"],
        consent_id=str(resource_id) if resource_id is not None else None,
        request_id=payload.get("request_id"),
    )
