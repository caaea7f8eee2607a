from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    AUTH_MISSING = "AUTH_MISSING"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVARIANT_VIOLATION = "INVARIANT_VIOLATION"
    CONSENT_CONFLICT = "CONSENT_CONFLICT"
    ALREADY_REVOKED = "ALREADY_REVOKED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


def paginated(data: list[Any], *, limit: int, offset: int, count: int) -> dict[str, Any]:
    return {
        "data": data,
        "meta": {
            "limit": limit,
            "offset": offset,
            "count": count,
        },
    }


def error_body(code: ErrorCode, message: str, request_id: str) -> dict[str, Any]:
    return {
        "error": {
            "code": str(code),
            "message": message,
            "request_id": request_id,
        }
    }
