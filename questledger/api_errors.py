"""
API error handling. Structured JSON errors with codes.

Every error response: {"error": {"code": "...", "message": "...", "details": {...}}}

Engine errors already carry a machine-readable kind; the HTTP status is
picked by error family.
"""

from fastapi import Request
from fastapi.responses import JSONResponse

from questledger.errors import (
    LedgerError, ValidationError, StateError, NotFoundError,
    TransferRejected, CollaboratorError,
)


class APIError(Exception):
    """Structured API error with HTTP status and machine-readable code."""

    def __init__(self, status: int, code: str, message: str,
                 details: dict | None = None):
        self.status = status
        self.code = code
        self.message = message
        self.details = details or {}

    def response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status,
            content={"error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }},
        )


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    return exc.response()


_STATUS_BY_FAMILY = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (StateError, 409),
    (TransferRejected, 402),
    (CollaboratorError, 503),
)


def translate_engine_error(exc: LedgerError) -> APIError:
    """Translate engine exceptions to structured API errors."""
    for family, status in _STATUS_BY_FAMILY:
        if isinstance(exc, family):
            return APIError(status, exc.kind, exc.reason)
    return APIError(400, exc.kind, exc.reason)
