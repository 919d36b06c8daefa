"""Domain error taxonomy for the procurement ledger.

Every error carries the HTTP status the API layer answers with, so services
can raise them without knowing about FastAPI.

* Caller mistakes, safe to correct and retry: ``ValidationError``,
  ``InvalidTransitionError``, ``PermissionDeniedError``, ``NotFoundError``,
  ``ConflictError``.
* Data-integrity failures, the triggering operation is aborted with no side
  effects: ``UnbalancedPostingError``, ``UnknownAccountError``,
  ``UnknownItemError``.
* ``StorageError`` wraps backing-store failures.  Nothing here retries.
"""
from __future__ import annotations

from typing import Any


class BuildBooksError(Exception):
    status_code: int = 400
    code: str = "error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"detail": self.message, "error": self.code}
        if self.details:
            body["context"] = self.details
        return body


class ValidationError(BuildBooksError):
    status_code = 422
    code = "validation_error"


class NotFoundError(BuildBooksError):
    status_code = 404
    code = "not_found"


class InvalidTransitionError(BuildBooksError):
    status_code = 409
    code = "invalid_transition"


class PermissionDeniedError(BuildBooksError):
    status_code = 403
    code = "permission_denied"


class ConflictError(BuildBooksError):
    status_code = 409
    code = "conflict"


class UnbalancedPostingError(BuildBooksError):
    status_code = 422
    code = "unbalanced_posting"


class UnknownAccountError(BuildBooksError):
    status_code = 422
    code = "unknown_account"


class UnknownItemError(BuildBooksError):
    status_code = 422
    code = "unknown_item"


class StorageError(BuildBooksError):
    status_code = 503
    code = "storage_error"
