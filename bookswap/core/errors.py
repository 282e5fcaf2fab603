"""Structured errors raised by the marketplace services."""

from __future__ import annotations


class ServiceError(ValueError):
    """Base error carrying an HTTP status and a stable error code."""

    default_status_code = 400
    default_code = "bad_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code if status_code is not None else self.default_status_code
        self.code = code if code is not None else self.default_code


class NotFoundError(ServiceError):
    """Entity absent."""

    default_status_code = 404
    default_code = "not_found"


class ForbiddenError(ServiceError):
    """Actor lacks the required relationship to the entity."""

    default_status_code = 403
    default_code = "forbidden"


class FailedPreconditionError(ServiceError):
    """Entity exists but is in the wrong state for the transition."""

    default_status_code = 400
    default_code = "failed_precondition"


class InvalidArgumentError(ServiceError):
    """Malformed input."""

    default_status_code = 400
    default_code = "invalid_argument"


class ConflictError(ServiceError):
    """A competing record already exists."""

    default_status_code = 400
    default_code = "conflict"
