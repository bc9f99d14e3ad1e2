"""API errors and response envelopes.

Every API method answers with one of two JSON envelopes:

    {"ok": true, "data": {...}}
    {"ok": false, "error": {"code": "UNAUTHORIZED"}}

Domain failures are raised as APIError and turned into the error envelope
by the exception handlers registered in main.py. ProgrammerError is a
separate, fatal class: it means calling code is broken (a context escaped
its scope, an account id of the wrong type reached SQL). It is logged
loudly and never shown to the client beyond a generic UNKNOWN.
"""

from enum import Enum
from typing import Any

from fastapi.responses import JSONResponse


class APIErrorCode(str, Enum):
    BAD_INPUT = "BAD_INPUT"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    ACCESS_TOKEN_EXPIRED = "ACCESS_TOKEN_EXPIRED"
    SIGN_UP_EMAIL_ALREADY_USED = "SIGN_UP_EMAIL_ALREADY_USED"
    SIGN_IN_INCORRECT_CREDENTIALS = "SIGN_IN_INCORRECT_CREDENTIALS"
    UNKNOWN = "UNKNOWN"


ERROR_STATUS: dict[APIErrorCode, int] = {
    APIErrorCode.BAD_INPUT: 400,
    APIErrorCode.NOT_FOUND: 404,
    APIErrorCode.UNAUTHORIZED: 401,
    APIErrorCode.ACCESS_TOKEN_EXPIRED: 401,
    APIErrorCode.SIGN_UP_EMAIL_ALREADY_USED: 400,
    APIErrorCode.SIGN_IN_INCORRECT_CREDENTIALS: 401,
    APIErrorCode.UNKNOWN: 500,
}


class APIError(Exception):
    """A domain error with a stable, client-visible code."""

    def __init__(self, code: APIErrorCode, message: str | None = None):
        super().__init__(message or code.value)
        self.code = code

    @property
    def status_code(self) -> int:
        return ERROR_STATUS[self.code]


class ProgrammerError(Exception):
    """A defect in calling code. Never recovered, never a user-facing code."""


def ok_envelope(data: dict[str, Any]) -> dict[str, Any]:
    return {"ok": True, "data": data}


def error_envelope(code: APIErrorCode) -> dict[str, Any]:
    return {"ok": False, "error": {"code": code.value}}


def error_response(code: APIErrorCode, status_code: int | None = None) -> JSONResponse:
    """Build a JSON error envelope response, defaulting the status by code."""
    return JSONResponse(
        status_code=status_code or ERROR_STATUS[code],
        content=error_envelope(code),
    )
