from __future__ import annotations

from typing import Dict, List, Optional

FieldErrors = Dict[str, List[str]]


class ServiceError(Exception):
    """An expected failure that the API turns into an error envelope.

    ``status_code`` picks the HTTP status, ``error_code`` lets routes branch on
    the cause (for example to pick the audit action), and ``errors`` holds
    per-field messages as ``{field: [message, ...]}``.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        errors: Optional[FieldErrors] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.errors = errors

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.status_code}, {self.error_code!r}, {self.message!r})"


class ValidationError(ServiceError):
    pass


class AuthenticationError(ServiceError):
    """No usable access token, or bad credentials."""

    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class CSRFError(ForbiddenError):
    error_code = "csrf_failed"


class OriginRejectedError(ForbiddenError):
    error_code = "origin_rejected"


class PinRequiredError(ForbiddenError):
    """Security PIN absent, not configured, or wrong for a sensitive operation."""

    error_code = "pin_required"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate email, saved card, or similar uniqueness clash."""

    status_code = 409
    error_code = "conflict"


class PayloadTooLargeError(ServiceError):
    status_code = 413
    error_code = "payload_too_large"


class RateLimitedError(ServiceError):
    """The caller's rate-limit window is exhausted.

    ``retry_after`` (seconds) becomes the ``Retry-After`` response header.
    """

    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: Optional[int] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"
