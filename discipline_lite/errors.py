"""
Shared error types for the disciplinary case service.

Kept in their own module so the service, the ingestor and the API layer all
raise and catch the same classes.
"""


class CaseServiceError(Exception):
    """Base class for every error surfaced to callers."""

    status_code = 500
    kind = "internal"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class CaseValidationError(CaseServiceError):
    """Malformed, missing or oversized input."""

    status_code = 400
    kind = "validation"


class PayloadTooLargeError(CaseValidationError):
    """An inline evidence payload exceeds its size ceiling."""


class CaseNotFoundError(CaseServiceError):
    status_code = 404
    kind = "not_found"

    def __init__(self, case_id: str):
        super().__init__(f"Disciplinary case with ID {case_id} not found")
        self.case_id = case_id


class CaseForbiddenError(CaseServiceError):
    """Actor role insufficient, or the case is outside the actor's visibility."""

    status_code = 403
    kind = "forbidden"


class UploadFailure(CaseServiceError):
    """Blob store transport failure."""

    status_code = 502
    kind = "upload_failure"


class UploadTimeoutError(UploadFailure):
    status_code = 504
    kind = "upload_timeout"


class ConcurrentModificationError(CaseServiceError):
    """An append kept losing the optimistic version race."""

    status_code = 409
    kind = "conflict"
