from __future__ import annotations


class RAGError(Exception):
    """Base class for domain errors surfaced to callers.

    ``status_code`` and ``code`` are stable and safe to expose; the routing
    layer maps them straight onto the response.
    """

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(RAGError):
    status_code = 400
    code = "VALIDATION_ERROR"


class AuthorizationError(RAGError):
    status_code = 403
    code = "FORBIDDEN"

    def __init__(self, message: str = "Forbidden") -> None:
        super().__init__(message)


class NotFoundError(RAGError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str) -> None:
        super().__init__(f"{resource} not found")
        self.resource = resource


class BackendError(RAGError):
    """A store or remote service failed; details stay in the logs."""

    status_code = 502
    code = "BACKEND_FAILURE"


class GenerationError(BackendError):
    """The generation service failed while synthesising an answer."""

    code = "GENERATION_FAILED"
