from __future__ import annotations

import uuid


class ConsentError(Exception):
    """Base class for consent engine errors."""

    def __init__(self, message: str, code: str = "CONSENT_ERROR") -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class ConsentNotFoundError(ConsentError):
    """Raised when an operation targets a consent id that does not exist."""

    def __init__(self, consent_id: uuid.UUID | str) -> None:
        super().__init__(f"Consent {consent_id} not found", code="NOT_FOUND")
        self.consent_id = consent_id


class ConsentInvariantError(ConsentError):
    """
    Raised before any write when the requested change is inconsistent with the
    consent data model, e.g. override rows for scope ``none``.

    Attributes:
        already_revoked: True when the target consent is no longer active.
    """

    def __init__(self, message: str, *, already_revoked: bool = False) -> None:
        super().__init__(message, code="INVARIANT_VIOLATION")
        self.already_revoked = already_revoked


class ConsentConflictError(ConsentError):
    """
    Raised when a competing writer changed the same subject concurrently.

    The operation made no changes and is safe to retry.
    """

    def __init__(self, subject_id: str | None, consent_kind: str) -> None:
        super().__init__(
            f"Concurrent consent change detected for kind '{consent_kind}'; retry the request",
            code="CONSENT_CONFLICT",
        )
        self.subject_id = subject_id
        self.consent_kind = consent_kind
        self.retryable = True
