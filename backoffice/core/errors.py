"""Domain error taxonomy.

Services raise these; the HTTP layer maps them to status codes in ``backoffice.main``.
Every error carries a stable machine ``code`` and an optional ``details`` dict that is
merged into the response ``detail`` payload.
"""

from __future__ import annotations

from typing import Any


class BackofficeError(Exception):
    status_code = 500
    default_code = "BACKOFFICE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {"code": self.code, "message": self.message}
        detail.update(self.details)
        return detail


class ValidationError(BackofficeError):
    """Malformed or missing input."""

    status_code = 400
    default_code = "VALIDATION_ERROR"


class NotFoundError(BackofficeError):
    """Referenced deal, flag, instrument or requirement does not exist."""

    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(BackofficeError):
    """State precondition violated (already resolved, wrong verification state, ...)."""

    status_code = 409
    default_code = "CONFLICT"


class DependencyError(BackofficeError):
    """Rule catalog, database or evaluator unavailable. Never treated as success."""

    status_code = 503
    default_code = "DEPENDENCY_UNAVAILABLE"
