"rolegate"
from __future__ import annotations

import logging
import os
import sys as _sys

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from rolegate.errors import AccountNotFoundError, IdentityProviderError
from rolegate.keycloak import load_keycloak_config
from rolegate.tokens import TokenVerificationError, verify_access_token

try:
    from .auth_utils import bearer_token, is_public_path
except ImportError:
    from auth_utils import bearer_token, is_public_path

# Ensure both import styles reference the same module instance.
if __name__ == "main":
    _sys.modules.setdefault("backend.web.main", _sys.modules[__name__])
elif __name__ == "backend.web.main":
    _sys.modules["main"] = _sys.modules[__name__]


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out via ROLEGATE_ENABLE_DOTENV (default true
      outside pytest).
    """
    if "pytest" in _sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("ROLEGATE_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


try:
    from dotenv import load_dotenv
    if _should_load_dotenv():
        load_dotenv()
except ImportError:
    pass

# Production safety checks (fail-fast on insecure config).
try:
    from . import config as _cfg
except ImportError:
    import config as _cfg  # type: ignore
_cfg.ensure_secure_config_on_startup()

try:
    from .wiring import get_services
    from .routes.educator import educator_router
    from .routes.invitations import invitations_router
    from .routes.users import users_router
    from .routes.webhooks import webhooks_router
except ImportError:
    from wiring import get_services  # type: ignore
    from routes.educator import educator_router  # type: ignore
    from routes.invitations import invitations_router  # type: ignore
    from routes.users import users_router  # type: ignore
    from routes.webhooks import webhooks_router  # type: ignore


class AuthSettings:
    def __init__(self) -> None:
        self._env_override: str | None = None

    @property
    def environment(self) -> str:
        if self._env_override is not None:
            return self._env_override
        return os.getenv("ROLEGATE_ENV", "dev").lower()

    def override_environment(self, env: str | None) -> None:
        """Override environment for tests (e.g., "prod"), or reset with None."""
        self._env_override = env


logger = logging.getLogger("rolegate.web")
SETTINGS = AuthSettings()
KEYCLOAK_CFG = load_keycloak_config()
# Audience check stays off unless configured; Keycloak access tokens usually
# name `account` rather than the frontend client.
EXPECTED_AUDIENCE = os.getenv("KC_EXPECTED_AUDIENCE") or None

app = FastAPI(title="rolegate", description="Role gating, invitations and account reconciliation", version="0.1.0")

app.include_router(invitations_router)
app.include_router(educator_router)
app.include_router(users_router)
app.include_router(webhooks_router)

_NO_STORE = {"Cache-Control": "private, no-store"}


# --- Auth Middleware -----------------------------------------------------------

@app.middleware("http")
async def auth_enforcement(request: Request, call_next):
    path = request.url.path
    if is_public_path(path, request.method):
        return await call_next(request)

    token = bearer_token(request.headers)
    if not token:
        return JSONResponse({"error": "unauthenticated"}, status_code=401, headers=_NO_STORE)
    try:
        claims = verify_access_token(token=token, cfg=KEYCLOAK_CFG, expected_audience=EXPECTED_AUDIENCE)
    except TokenVerificationError as exc:
        logger.info("Rejected bearer token: %s", exc.code)
        return JSONResponse({"error": "unauthenticated"}, status_code=401, headers=_NO_STORE)

    # Only the subject is exposed downstream; roles are always asked live.
    request.state.user = {"sub": str(claims.get("sub") or "")}
    return await call_next(request)


# --- Security Headers Middleware ----------------------------------------------

@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    if SETTINGS.environment == "prod":
        response.headers.setdefault("Cross-Origin-Opener-Policy", "same-origin")
    response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return response


# --- Routes -------------------------------------------------------------------

@app.get("/health")
async def health_check():
    # Minimal health endpoint used by orchestrators and tests.
    return JSONResponse({"status": "healthy"}, headers=_NO_STORE)


@app.get("/api/me")
async def get_me(request: Request):
    """Caller profile: provider id, local projection fields and live role."""
    sub = (getattr(request.state, "user", None) or {}).get("sub")
    if not sub:
        return JSONResponse({"error": "unauthenticated"}, status_code=401, headers=_NO_STORE)
    services = get_services()
    try:
        role = services.guard.current_role(sub)
    except AccountNotFoundError:
        return JSONResponse({"error": "forbidden"}, status_code=403, headers=_NO_STORE)
    except IdentityProviderError as exc:
        logger.warning("Role lookup for /api/me failed: %s", exc.code)
        return JSONResponse({"error": "lookup_failed"}, status_code=503, headers=_NO_STORE)
    local = services.accounts.get(sub)
    return JSONResponse({
        "sub": sub,
        "role": role,
        "email": local.email if local else None,
        "name": local.name if local else None,
        "image_url": local.image_url if local else None,
    }, headers=_NO_STORE)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=os.getenv("ROLEGATE_HOST", "0.0.0.0"),
        port=int(os.getenv("ROLEGATE_PORT", "8000")),
        reload=SETTINGS.environment == "dev",
    )
