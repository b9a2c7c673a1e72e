"""
Configuration and startup security checks for rolegate.

Why: Role elevation is security sensitive. A production process must not start
with placeholder secrets, plain-http identity traffic or an in-memory store
that forgets spent invitation tokens on restart. Development stays permissive.

Permissions: The caller needs no special privileges. The function simply reads
environment variables and raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

import os


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def _is_placeholder(value: str) -> bool:
    upper = value.upper()
    return upper.startswith("CHANGE_ME") or upper in {"DUMMY_DO_NOT_USE", "TEST_ONLY_NOT_USED"}


def _must_be_https(url_value: str, var_name: str) -> None:
    val = (url_value or "").strip().lower()
    if val and not val.startswith("https://"):
        raise SystemExit(f"Refusing to start: {var_name} must use https in production.")


def ensure_secure_config_on_startup() -> None:
    """Fail fast on insecure production configuration.

    Checks (prod-like environments only):
    - Keycloak admin client secret set and not a placeholder (no password grant).
    - Webhook signing secret set and not a placeholder.
    - KC_BASE_URL and FRONTEND_URL use https.
    - STORE_BACKEND=db (token single use must survive restarts).
    - DATABASE_URL must not explicitly disable TLS.
    """
    env = os.getenv("ROLEGATE_ENV", "dev")
    if not _is_prod_like(env):
        return

    kc_secret = (os.getenv("KC_ADMIN_CLIENT_SECRET", "") or "").strip()
    if not kc_secret or _is_placeholder(kc_secret):
        raise SystemExit(
            "Refusing to start: KC_ADMIN_CLIENT_SECRET is unset or a placeholder in production."
        )

    wh_secret = (os.getenv("WEBHOOK_SIGNING_SECRET", "") or "").strip()
    if not wh_secret or _is_placeholder(wh_secret.removeprefix("whsec_")):
        raise SystemExit(
            "Refusing to start: WEBHOOK_SIGNING_SECRET is unset or a placeholder in production."
        )

    _must_be_https(os.getenv("KC_BASE_URL", ""), "KC_BASE_URL")
    _must_be_https(os.getenv("FRONTEND_URL", ""), "FRONTEND_URL")

    backend = (os.getenv("STORE_BACKEND", "memory") or "").strip().lower()
    if backend != "db":
        raise SystemExit("Refusing to start: STORE_BACKEND=db is mandatory in production/staging.")

    dsn = os.getenv("DATABASE_URL", "")
    if not dsn:
        raise SystemExit("Refusing to start: DATABASE_URL is required with STORE_BACKEND=db.")
    if "sslmode=disable" in dsn:
        raise SystemExit(
            "Refusing to start: DATABASE_URL contains sslmode=disable in production. Use sslmode=require or verify TLS."
        )
