"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from solarops.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Project", resource_id=42)
    raise ValidationError("project_code is required", details={"project_code": "..."})

Store errors (``StoreError`` / ``StoreConflictError``) are raised by the
persistence layer; the document writer translates them into
``VersionConflict`` / ``DemotionFailed`` / ``PromotionFailed``.
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Project", "Document").
        resource_id: The key that was looked up. Included in logs and message.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 400 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique value.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


# ── Persistence layer ────────────────────────────────────────────────────────


class StoreError(Exception):
    """A store call failed; the session has already been rolled back."""

    def __init__(self, operation: str, cause: Exception | None = None) -> None:
        self.operation = operation
        self.cause = cause
        msg = f"store operation {operation!r} failed"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


class StoreConflictError(StoreError):
    """A store call violated a unique index (version or current-row race)."""


# ── Document version writer ──────────────────────────────────────────────────


class DocumentWriteError(Exception):
    """Base class for failures of the document version protocol.

    Attributes:
        project_id / doc_type_code: the document key being written.
        document_id: id of the row inserted by this attempt, if any.
        rolled_back: True when that row was soft-deleted again.
        cause: the underlying ``StoreError``.
    """

    stage = "unknown"

    def __init__(
        self,
        message: str,
        *,
        project_id: int | None = None,
        doc_type_code: str | None = None,
        document_id: int | None = None,
        rolled_back: bool = False,
        cause: Exception | None = None,
    ) -> None:
        self.project_id = project_id
        self.doc_type_code = doc_type_code
        self.document_id = document_id
        self.rolled_back = rolled_back
        self.cause = cause
        super().__init__(message)


class VersionConflict(DocumentWriteError):
    """Retries exhausted while racing other writers for the same key."""

    stage = "insert"


class DemotionFailed(DocumentWriteError):
    """Clearing the previous current row failed; the new row was rolled back."""

    stage = "demote"


class PromotionFailed(DocumentWriteError):
    """Promoting the new row failed; the new row was rolled back."""

    stage = "promote"
