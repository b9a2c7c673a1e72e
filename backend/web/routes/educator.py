"""
Educator request API routes.

Why:
    Students ask for the educator role; admins review. The ledger owns the
    state machine; this adapter only authenticates, gates by role and maps
    outcomes to HTTP.

Permissions:
    - submit / own status: any authenticated caller.
    - list / approve / reject: exact `admin` role.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from rolegate.educator_requests import STATUSES
from rolegate.errors import AccountNotFoundError, IdentityProviderError

from .security import _current_sub, _json_private, _private_error, _require_role, _result_error, _upstream_error

try:
    from ..wiring import get_services
except ImportError:
    from wiring import get_services  # type: ignore

educator_router = APIRouter(tags=["Educator Requests"])  # explicit paths below
logger = logging.getLogger("rolegate.web.educator")


class EducatorRequestCreate(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


class EducatorRequestReject(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


@educator_router.post("/api/educator/request")
async def submit_educator_request(request: Request, payload: EducatorRequestCreate | None = None):
    sub = _current_sub(request)
    if not sub:
        return _private_error("unauthenticated", status_code=401)
    try:
        outcome = get_services().ledger.submit(sub, payload.reason if payload else None)
    except AccountNotFoundError:
        return _private_error("forbidden", status_code=403)
    except IdentityProviderError as exc:
        logger.warning("Educator request submit failed upstream: %s", exc.code)
        return _upstream_error()
    if not outcome.ok:
        return _result_error(outcome)
    return _json_private(outcome.value.to_doc(), status_code=201)


@educator_router.get("/api/educator/request/status")
async def educator_request_status(request: Request):
    """Latest request of the caller; `{"status": "none"}` when never asked."""
    sub = _current_sub(request)
    if not sub:
        return _private_error("unauthenticated", status_code=401)
    latest = get_services().ledger.status_for(sub)
    if latest is None:
        return _json_private({"status": "none"})
    return _json_private(latest.to_doc())


@educator_router.get("/api/educator/requests")
async def list_educator_requests(request: Request, status: Optional[str] = None):
    denied = _require_role(request, "admin")
    if denied:
        return denied
    if status is not None and status not in STATUSES:
        return _private_error("validation_error", status_code=400, detail="invalid_status")
    return _json_private(get_services().ledger.list_by_status(status))


@educator_router.patch("/api/educator/requests/{request_id}/approve")
async def approve_educator_request(request: Request, request_id: str):
    denied = _require_role(request, "admin")
    if denied:
        return denied
    try:
        outcome = get_services().ledger.approve(request_id, _current_sub(request))
    except IdentityProviderError as exc:
        # Provider role unchanged or unknown; the request stays pending for a retry.
        logger.warning("Educator approval failed upstream for %s: %s", request_id, exc.code)
        return _upstream_error()
    if not outcome.ok:
        return _result_error(outcome)
    return _json_private(outcome.value.to_doc())


@educator_router.patch("/api/educator/requests/{request_id}/reject")
async def reject_educator_request(request: Request, request_id: str, payload: EducatorRequestReject | None = None):
    denied = _require_role(request, "admin")
    if denied:
        return denied
    outcome = get_services().ledger.reject(request_id, _current_sub(request), payload.reason if payload else None)
    if not outcome.ok:
        return _result_error(outcome)
    return _json_private(outcome.value.to_doc())
