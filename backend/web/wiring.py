"""
Service wiring for the HTTP adapter.

Why:
    Routes should not construct stores or provider clients themselves. This
    module builds one `Services` bundle from the environment and hands it out
    through `get_services()`. Tests swap the bundle with `set_services()`
    (in-memory stores plus a fake identity provider).

Backends:
    - STORE_BACKEND=memory (default): process-local stores, fine for dev/tests.
    - STORE_BACKEND=db: Postgres tables via psycopg3 (`DATABASE_URL`).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Callable, Optional

from rolegate.accounts import AccountStore
from rolegate.educator_requests import EducatorRequestLedger
from rolegate.guard import AuthorizationGuard
from rolegate.invitations import TokenVault
from rolegate.keycloak import IdentityProvider, KeycloakAdmin, KeycloakConfig, load_keycloak_config
from rolegate.onboarding import InvitationWorkflow
from rolegate.reconciler import AccountReconciler
from rolegate.stores import InMemoryKeyedStore, KeyedStore
from rolegate.user_admin import UserAdministration
from rolegate.webhooks import WebhookVerifier

logger = logging.getLogger("rolegate.web")

DEFAULT_INVITATION_TTL_HOURS = 48


@dataclass
class Services:
    keycloak: KeycloakConfig
    idp: IdentityProvider
    accounts: AccountStore
    vault: TokenVault
    workflow: InvitationWorkflow
    ledger: EducatorRequestLedger
    guard: AuthorizationGuard
    users: UserAdministration
    reconciler: Optional[AccountReconciler]
    frontend_url: str = "http://localhost:3000"
    invitation_ttl_hours: float = DEFAULT_INVITATION_TTL_HOURS


def _store_factory():
    backend = (os.getenv("STORE_BACKEND", "memory") or "memory").strip().lower()
    if backend == "db":
        from rolegate.stores_db import DBKeyedStore

        return lambda table: DBKeyedStore(f"public.{table}")
    return lambda table: InMemoryKeyedStore()


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s", name)
        return default


def build_services(
    *,
    idp: IdentityProvider | None = None,
    store_factory: Callable[[str], KeyedStore] | None = None,
    webhook_secret: str | None = None,
) -> Services:
    """Assemble all components. Parameters override the environment."""
    cfg = load_keycloak_config()
    provider = idp if idp is not None else KeycloakAdmin(cfg)
    make: Callable[[str], KeyedStore] = store_factory or _store_factory()

    accounts = AccountStore(make("accounts"))
    vault = TokenVault(make("invitations"))
    ledger = EducatorRequestLedger(
        provider,
        store=make("educator_requests"),
        pending_index=make("educator_request_pending"),
        accounts=accounts,
    )

    secret = webhook_secret if webhook_secret is not None else (os.getenv("WEBHOOK_SIGNING_SECRET") or "")
    reconciler = None
    if secret:
        reconciler = AccountReconciler(accounts, provider, WebhookVerifier(secret))
    else:
        logger.warning("WEBHOOK_SIGNING_SECRET not set; identity webhooks are disabled")

    return Services(
        keycloak=cfg,
        idp=provider,
        accounts=accounts,
        vault=vault,
        workflow=InvitationWorkflow(vault, accounts, provider),
        ledger=ledger,
        guard=AuthorizationGuard(provider),
        users=UserAdministration(accounts, provider),
        reconciler=reconciler,
        frontend_url=(os.getenv("FRONTEND_URL") or "http://localhost:3000").rstrip("/"),
        invitation_ttl_hours=_env_float("INVITATION_DEFAULT_TTL_HOURS", DEFAULT_INVITATION_TTL_HOURS),
    )


_SERVICES: Services | None = None


def get_services() -> Services:
    """Lazy accessor; builds from the environment on first use."""
    global _SERVICES
    if _SERVICES is None:
        _SERVICES = build_services()
    return _SERVICES


def set_services(services: Services | None) -> None:
    """Allow tests to swap the service bundle (None resets to lazy build)."""
    global _SERVICES
    _SERVICES = services
