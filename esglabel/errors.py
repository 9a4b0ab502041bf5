"""Error taxonomy shared by the import, assignment and span modules.

Core functions raise these; the HTTP and MCP layers turn them into result
values (``{"error": ..., "kind": ...}``) scoped to the request that failed.
"""
from __future__ import annotations

from dataclasses import dataclass


class LabelingError(Exception):
    """Base class for every failure the caller layer can render."""

    kind = "error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def as_result(self) -> dict[str, str]:
        return {"error": self.message, "kind": self.kind}


class ValidationError(LabelingError):
    """Malformed input, rejected before any mutation."""

    kind = "validation"
    status_code = 400


class ConflictError(LabelingError):
    """Claim race or duplicate unique key. Re-request the next task."""

    kind = "conflict"
    status_code = 409


class TransactionFailure(LabelingError):
    """An import batch failed mid-way and was rolled back."""

    kind = "transaction"
    status_code = 500

    def __init__(self, message: str, cause: BaseException | None = None):
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.cause = cause


class StorageError(LabelingError):
    """The document store could not be read or written."""

    kind = "storage"
    status_code = 502

    def __init__(self, message: str, cause: BaseException | None = None):
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.cause = cause


class SelectionError(LabelingError):
    """A text selection could not be turned into a label span."""

    kind = "selection"
    status_code = 422


class AuthorizationError(LabelingError):
    kind = "authorization"
    status_code = 403


class NotFoundError(LabelingError):
    kind = "not_found"
    status_code = 404


@dataclass(frozen=True)
class PartialResolutionWarning:
    """A record whose page document could not be resolved during import."""

    text_preview: str
    page_number: int

    def as_dict(self) -> dict:
        return {"text_preview": self.text_preview, "page_number": self.page_number}
