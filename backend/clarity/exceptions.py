"""
Domain exceptions.

Services raise these; the HTTP layer translates them into JSON responses
via the handler registered in main.py. Each class carries the status code
it maps to so routes never need to catch and re-raise.
"""

from fastapi import status


class ClarityError(Exception):
    """Base class for all domain errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "internal_error"

    def __init__(self, message: str, *, fields: dict[str, str] | None = None):
        super().__init__(message)
        self.message = message
        self.fields = fields or {}

    def to_dict(self) -> dict:
        body: dict = {"error": self.code, "detail": self.message}
        if self.fields:
            body["fields"] = self.fields
        return body


class ValidationError(ClarityError):
    """Input failed a domain rule (empty title, position out of range, ...)."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"


class NotFoundError(ClarityError):
    """Referenced brain, stream, card, file or job does not exist."""

    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class ConflictError(ClarityError):
    """Uniqueness violated, e.g. a saved-card title already used in the brain."""

    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class InvalidStateError(ClarityError):
    """Operation not allowed in the entity's current state."""

    status_code = status.HTTP_409_CONFLICT
    code = "invalid_state"


class ProcessingError(ClarityError):
    """File extraction or another background step failed."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "processing_error"


class JobTimeoutError(ClarityError):
    """A background job exceeded its time limit."""

    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    code = "timeout"


class StorageQuotaExceededError(ClarityError):
    status_code = status.HTTP_507_INSUFFICIENT_STORAGE
    code = "storage_quota_exceeded"


class UnsupportedFileTypeError(ClarityError):
    status_code = status.HTTP_415_UNSUPPORTED_MEDIA_TYPE
    code = "unsupported_file_type"


class FileTooLargeError(ClarityError):
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    code = "file_too_large"
