"""
Admin user management API routes.

Why:
    Admins create accounts directly (without an invitation), list local
    accounts with their live provider role, delete accounts and change roles.
    Roles are never stored locally; every listing asks the provider.

Permissions:
    Caller must hold the exact `admin` role.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from rolegate.errors import IdentityProviderError

from .security import _current_sub, _json_private, _private_error, _require_role, _result_error, _upstream_error

try:
    from ..wiring import get_services
except ImportError:
    from wiring import get_services  # type: ignore

users_router = APIRouter(tags=["Users"])  # explicit paths below
logger = logging.getLogger("rolegate.web.users")


class UserCreate(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=256)
    first_name: str = Field(..., max_length=100)
    last_name: str | None = Field(default=None, max_length=100)
    role: str = Field(default="student", max_length=32)


class RoleChange(BaseModel):
    role: str = Field(..., max_length=32)


@users_router.post("/api/admin/users")
async def create_user(request: Request, payload: UserCreate):
    denied = _require_role(request, "admin")
    if denied:
        return denied
    try:
        outcome = get_services().workflow.direct_create(
            payload.email, payload.password, payload.first_name, payload.last_name, payload.role
        )
    except IdentityProviderError as exc:
        logger.warning("Direct account creation failed upstream: %s", exc.code)
        return _upstream_error()
    if not outcome.ok:
        return _result_error(outcome)
    return _json_private({"account_id": outcome.value}, status_code=201)


@users_router.get("/api/admin/users")
async def list_users(request: Request):
    denied = _require_role(request, "admin")
    if denied:
        return denied
    return _json_private(get_services().users.list_users())


@users_router.delete("/api/admin/users/{account_id}")
async def delete_user(request: Request, account_id: str):
    denied = _require_role(request, "admin")
    if denied:
        return denied
    if account_id == _current_sub(request):
        return _private_error("validation_error", status_code=400, detail="cannot_delete_self")
    try:
        outcome = get_services().users.delete_user(account_id)
    except IdentityProviderError as exc:
        logger.warning("Account deletion failed upstream for %s: %s", account_id, exc.code)
        return _upstream_error()
    if not outcome.ok:
        return _result_error(outcome)
    return _json_private({"deleted": True})


@users_router.patch("/api/admin/users/{account_id}/role")
async def change_user_role(request: Request, account_id: str, payload: RoleChange):
    denied = _require_role(request, "admin")
    if denied:
        return denied
    try:
        outcome = get_services().users.change_role(account_id, payload.role)
    except IdentityProviderError as exc:
        logger.warning("Role change failed upstream for %s: %s", account_id, exc.code)
        return _upstream_error()
    if not outcome.ok:
        return _result_error(outcome)
    return _json_private({"account_id": account_id, "role": outcome.value})
