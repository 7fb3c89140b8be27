"""
core/errors.py -- Typed error taxonomy shared by the service and HTTP layers.

Services raise these; api/main.py maps every AppError to the uniform envelope
{"status": "error", "message": ..., "statusCode": ...}. Nothing below the HTTP
layer builds responses or picks status codes at raise sites beyond choosing
the error class.

Layer rule: core/ is the kernel. No imports from api/, web/, auth/, or mail/.
"""

from __future__ import annotations


class AppError(Exception):
    """Base class for every expected, client-facing failure."""

    status_code: int = 500
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, status_code: int | None = None) -> None:
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"status": "error", "message": self.message, "statusCode": self.status_code}


class BadRequest(AppError):
    status_code = 400
    default_message = "Bad request."


class Unauthorized(AppError):
    status_code = 401
    default_message = "Unauthorized"


class InvalidToken(Unauthorized):
    """Signature invalid, token expired, or wrong token purpose."""

    default_message = "Invalid or expired token."


class Forbidden(AppError):
    status_code = 403
    default_message = "Forbidden: Insufficient permissions"


class NotFound(AppError):
    status_code = 404
    default_message = "Not found."


class Conflict(AppError):
    """Duplicate resource or redundant state change.

    Redundant two-factor transitions (enable twice, disable when off) are
    reported with status_code=400, matching what clients already handle.
    """

    status_code = 409
    default_message = "Conflict."
