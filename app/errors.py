from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class ErrorKind(str, enum.Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONFLICT = "CONFLICT"
    NOT_FOUND = "NOT_FOUND"
    INVALID_CREDENTIAL = "INVALID_CREDENTIAL"
    INVALID_CODE = "INVALID_CODE"
    EXPIRED = "EXPIRED"
    RESEND_LIMIT_EXCEEDED = "RESEND_LIMIT_EXCEEDED"
    UNVERIFIED = "UNVERIFIED"
    INTERNAL = "INTERNAL"


ERROR_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION_ERROR: 422,
    ErrorKind.CONFLICT: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_CREDENTIAL: 401,
    ErrorKind.INVALID_CODE: 400,
    ErrorKind.EXPIRED: 410,
    ErrorKind.RESEND_LIMIT_EXCEEDED: 429,
    ErrorKind.UNVERIFIED: 403,
    ErrorKind.INTERNAL: 500,
}


@dataclass(frozen=True, slots=True)
class ServiceResult:
    """Tagged outcome of an identity operation. Failures carry a kind."""

    success: bool
    message: str
    kind: ErrorKind | None = None
    data: Any = None

    @classmethod
    def ok(cls, message: str, data: Any = None) -> ServiceResult:
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str) -> ServiceResult:
        return cls(success=False, message=message, kind=kind)


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message

    @classmethod
    def from_result(cls, result: ServiceResult) -> ApiError:
        kind = result.kind or ErrorKind.INTERNAL
        return cls(
            status_code=ERROR_STATUS_CODES.get(kind, 500),
            code=kind.value,
            message=result.message,
        )


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)
