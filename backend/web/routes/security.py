"""
Shared web security helpers for routes.

Contains the role gate and the mapping from core error codes to HTTP
responses. Keeping a single implementation avoids drift between routers.
Every JSON response is marked `private, no-store`: all payloads here are
caller- or role-scoped.
"""
from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from rolegate.domain import (
    ACCOUNT_EXISTS,
    ALREADY_ELEVATED,
    ALREADY_PENDING,
    ALREADY_USED,
    EXPIRED,
    FORBIDDEN,
    LOOKUP_FAILED,
    NOT_FOUND,
    NOT_PENDING,
    VALIDATION_ERROR,
    VERIFICATION_FAILED,
    Result,
)

try:
    from ..wiring import get_services
except ImportError:
    from wiring import get_services  # type: ignore

ERROR_STATUS = {
    NOT_FOUND: 404,
    EXPIRED: 410,
    ALREADY_USED: 409,
    ALREADY_PENDING: 409,
    ALREADY_ELEVATED: 409,
    ACCOUNT_EXISTS: 409,
    NOT_PENDING: 409,
    VALIDATION_ERROR: 400,
    FORBIDDEN: 403,
    LOOKUP_FAILED: 503,
    VERIFICATION_FAILED: 400,
}


def _json_private(payload: Any, *, status_code: int = 200) -> JSONResponse:
    return JSONResponse(content=payload, status_code=status_code, headers={"Cache-Control": "private, no-store"})


def _private_error(error: str, *, status_code: int, detail: str | None = None) -> JSONResponse:
    payload = {"error": error}
    if detail:
        payload["detail"] = detail
    return _json_private(payload, status_code=status_code)


def _result_error(result: Result) -> JSONResponse:
    """Translate a failed core `Result` into its HTTP response."""
    return _private_error(result.error or "error", status_code=ERROR_STATUS.get(result.error, 500), detail=result.detail)


def _upstream_error() -> JSONResponse:
    return _private_error("upstream_error", status_code=502)


def _current_sub(request: Request) -> str:
    user = getattr(request.state, "user", None) or {}
    sub = user.get("sub")
    return str(sub) if sub else ""


def _require_role(request: Request, role: str) -> JSONResponse | None:
    """Return an error response unless the caller currently holds `role`.

    The role is asked from the identity provider on each call; nothing from
    the caller's token is trusted beyond its subject.
    """
    sub = _current_sub(request)
    if not sub:
        return _private_error("unauthenticated", status_code=401)
    outcome = get_services().guard.require_role(sub, role)
    if not outcome.ok:
        return _result_error(outcome)
    return None
