"""Domain exceptions and their HTTP mapping.

Services raise these; ``main.create_app`` turns them into
``{"error": ..., "message": ...}`` JSON responses with ``status_code``.
"""

from __future__ import annotations

from typing import Any


class OneClickTagError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code: int = 500
    error: str = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        error: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error is not None:
            self.error = error
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error, "message": self.message}


class NotFoundError(OneClickTagError):
    status_code = 404
    error = "not_found"


class BatchNotFoundError(NotFoundError):
    def __init__(self, batch_id: str) -> None:
        super().__init__(f"Batch {batch_id} not found")
        self.batch_id = batch_id


class PreconditionFailedError(OneClickTagError):
    status_code = 400
    error = "precondition_failed"


class BatchAlreadyFinishedError(PreconditionFailedError):
    def __init__(self, batch_id: str, status: str) -> None:
        super().__init__(f"Batch {batch_id} is already finished ({status})")
        self.batch_id = batch_id
        self.status = status


class ValidationFailedError(OneClickTagError):
    status_code = 400
    error = "validation_error"


class TenantContextRequiredError(OneClickTagError):
    status_code = 400
    error = "Tenant context required"

    def __init__(self) -> None:
        super().__init__(
            "This endpoint requires a valid tenant context. Please provide tenantId "
            "in headers, query parameters, or JWT token."
        )


class AuthenticationError(OneClickTagError):
    status_code = 401
    error = "unauthorized"


class ForbiddenError(OneClickTagError):
    status_code = 403
    error = "forbidden"
