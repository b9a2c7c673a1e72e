"""
Invitation API routes: admin issuance/listing/revocation plus anonymous
verification and redemption.

Why:
    The token is the only credential an invitee has. Peek lets the frontend
    show "invited as <role>" (or why the link is dead) before asking for a
    password; accept spends the token and creates the account.

Security:
    - Admin endpoints require the exact `admin` role, checked live against the
      identity provider.
    - Token values are returned only to admins (issue/list) and never logged.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from rolegate.domain import ALLOWED_ROLES
from rolegate.errors import IdentityProviderError

from .security import _json_private, _private_error, _require_role, _result_error, _upstream_error

try:
    from ..wiring import get_services
except ImportError:
    from wiring import get_services  # type: ignore

invitations_router = APIRouter(tags=["Invitations"])  # explicit paths below
logger = logging.getLogger("rolegate.web.invitations")


class InvitationCreate(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    role: str = Field(..., min_length=1, max_length=32)
    ttl_hours: float | None = Field(default=None, gt=0, le=24 * 30)


class InvitationAccept(BaseModel):
    password: str = Field(default="", max_length=256)
    first_name: str = Field(default="", max_length=100)
    last_name: str | None = Field(default=None, max_length=100)


def _serialize_invitation(inv, *, expired: bool | None = None, invite_url: str | None = None) -> dict:
    out = {
        "token": inv.token,
        "email": inv.email,
        "role": inv.role,
        "created_at": inv.created_at,
        "expires_at": inv.expires_at,
        "used": inv.used,
    }
    if expired is not None:
        out["expired"] = expired
    if invite_url is not None:
        out["invite_url"] = invite_url
    return out


@invitations_router.post("/api/admin/invitations")
async def create_invitation(request: Request, payload: InvitationCreate):
    """Issue an invitation (admin only). Returns the token and its link."""
    denied = _require_role(request, "admin")
    if denied:
        return denied
    email = payload.email.strip()
    if "@" not in email:
        return _private_error("validation_error", status_code=400, detail="invalid_email")
    if payload.role not in ALLOWED_ROLES:
        return _private_error("validation_error", status_code=400, detail="invalid_role")
    services = get_services()
    ttl = payload.ttl_hours or services.invitation_ttl_hours
    inv = services.vault.issue(email, payload.role, ttl)
    url = f"{services.frontend_url}/accept-invite/{inv.token}"
    return _json_private(_serialize_invitation(inv, invite_url=url), status_code=201)


@invitations_router.get("/api/admin/invitations")
async def list_invitations(request: Request):
    denied = _require_role(request, "admin")
    if denied:
        return denied
    views = get_services().vault.list()
    return _json_private([_serialize_invitation(v.invitation, expired=v.expired) for v in views])


@invitations_router.delete("/api/admin/invitations/{token}")
async def revoke_invitation(request: Request, token: str):
    denied = _require_role(request, "admin")
    if denied:
        return denied
    outcome = get_services().vault.revoke(token)
    if not outcome.ok:
        return _result_error(outcome)
    return _json_private({"revoked": True})


@invitations_router.get("/api/invitations/{token}")
async def verify_invitation(token: str):
    """Anonymous pre-redemption check. Never mutates the token."""
    outcome = get_services().vault.peek(token)
    if not outcome.ok:
        return _result_error(outcome)
    inv = outcome.value
    return _json_private({"email": inv.email, "role": inv.role, "expires_at": inv.expires_at})


@invitations_router.post("/api/invitations/{token}/accept")
async def accept_invitation(token: str, payload: InvitationAccept):
    """Redeem the token and create the invited account.

    The token is spent before the account is created; a provider failure
    afterwards does not give it back.
    """
    try:
        outcome = get_services().workflow.redeem(token, payload.password, payload.first_name, payload.last_name)
    except IdentityProviderError as exc:
        logger.warning("Invitation redemption failed upstream: %s", exc.code)
        return _upstream_error()
    if not outcome.ok:
        return _result_error(outcome)
    return _json_private({"account_id": outcome.value}, status_code=201)
