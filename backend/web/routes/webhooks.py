"""
Identity-provider webhook endpoint.

Security:
    Public route; trust comes only from the signature, which the reconciler
    verifies against the raw request body before anything is parsed. The body
    must therefore be read unmodified (`request.body()`), not via a model.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Request

from .security import _json_private, _private_error, _result_error

try:
    from ..wiring import get_services
except ImportError:
    from wiring import get_services  # type: ignore

webhooks_router = APIRouter(tags=["Webhooks"])
logger = logging.getLogger("rolegate.web.webhooks")


@webhooks_router.post("/api/webhooks/identity")
async def identity_webhook(request: Request):
    reconciler = get_services().reconciler
    if reconciler is None:
        return _private_error("webhook_not_configured", status_code=503)
    raw = await request.body()
    outcome = reconciler.receive(raw, dict(request.headers))
    if not outcome.ok:
        return _result_error(outcome)
    return _json_private({"received": True, "action": outcome.value})
