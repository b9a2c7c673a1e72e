"""
Keycloak Admin adapter: the identity provider client used by the core.

Design:
- Framework-agnostic; the core depends on the `IdentityProvider` protocol and
  tests swap in an in-memory fake.
- Uses requests under the hood. Every call carries a timeout; transport
  errors and unexpected statuses surface as `IdentityProviderError`.
- Roles are realm roles. An account holds at most one role out of
  ALLOWED_ROLES; `set_role` replaces the mapping instead of adding to it.

Security:
- Do not log credentials or tokens.
- Prefer a confidential client (client_credentials). The password grant is a
  dev-only fallback and is refused in prod-like environments.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Protocol
import logging
import os
import re

import requests

from .domain import ALLOWED_ROLES, IdentityAccount, is_valid_role
from .errors import AccountExistsError, AccountNotFoundError, IdentityProviderError

logger = logging.getLogger("rolegate.keycloak")

HTTP_TIMEOUT_SECONDS = 10


class IdentityProvider(Protocol):
    def get_account(self, account_id: str) -> IdentityAccount:
        ...

    def create_account(
        self, *, email: str, password: str, first_name: str, last_name: str, role: str
    ) -> str:
        ...

    def update_account(self, account_id: str, fields: Mapping[str, str]) -> None:
        ...

    def set_role(self, account_id: str, role: str) -> None:
        ...

    def delete_account(self, account_id: str) -> None:
        ...


@dataclass(frozen=True)
class KeycloakConfig:
    base_url: str  # internal base URL (server-to-server), e.g., http://keycloak:8080
    realm: str  # e.g., rolegate
    client_id: str  # audience of caller access tokens
    admin_realm: str = "master"
    admin_client_id: str = "rolegate-admin-cli"
    admin_client_secret: Optional[str] = None
    # Legacy fallback (password grant), dev only
    admin_username: Optional[str] = None
    admin_password: Optional[str] = None
    ca_bundle: Optional[str] = None

    @property
    def issuer(self) -> str:
        return f"{self.base_url}/realms/{self.realm}"

    @property
    def admin_base(self) -> str:
        return f"{self.base_url}/admin/realms/{self.realm}"


def load_keycloak_config() -> KeycloakConfig:
    return KeycloakConfig(
        base_url=os.getenv("KC_BASE_URL", "http://localhost:8080").rstrip("/"),
        realm=os.getenv("KC_REALM", "rolegate"),
        client_id=os.getenv("KC_CLIENT_ID", "rolegate-web"),
        admin_realm=os.getenv("KC_ADMIN_REALM", "master"),
        admin_client_id=os.getenv("KC_ADMIN_CLIENT_ID", "rolegate-admin-cli"),
        admin_client_secret=os.getenv("KC_ADMIN_CLIENT_SECRET") or None,
        admin_username=os.getenv("KC_ADMIN_USERNAME") or None,
        admin_password=os.getenv("KC_ADMIN_PASSWORD") or None,
        ca_bundle=os.getenv("KEYCLOAK_CA_BUNDLE") or None,
    )


def _is_prod_like() -> bool:
    env = (os.getenv("ROLEGATE_ENV", "dev") or "").lower()
    return env in {"prod", "production", "stage", "staging"}


_splitter = re.compile(r"[^A-Za-z0-9]+")


def humanize_identifier(s: str) -> str:
    """Turn an email/username into a human display name.

    Rules:
    - For emails, use the part before '@'.
    - Split on non-alphanumeric separators (._- etc.).
    - Title-case each token and join with a single space.
    """
    if not s:
        return ""
    s = str(s)
    if "@" in s:
        s = s.split("@", 1)[0]
    parts = [p for p in _splitter.split(s) if p]
    if not parts:
        return ""
    return " ".join(p[:1].upper() + p[1:].lower() for p in parts)


def display_name(first_name: str, last_name: str, email: str = "") -> str:
    full = " ".join(p for p in ((first_name or "").strip(), (last_name or "").strip()) if p)
    if full:
        return full
    return humanize_identifier(email) or "User"


class KeycloakAdmin:
    def __init__(self, cfg: KeycloakConfig, *, session: requests.Session | None = None) -> None:
        self.cfg = cfg
        self._http = session or requests.Session()

    # --- transport -----------------------------------------------------------

    def _verify_opt(self):
        # Honor CA bundle in production environments; default to system CAs
        return self.cfg.ca_bundle if self.cfg.ca_bundle else True

    def _token(self) -> str:
        """Obtain an admin bearer token.

        Prefers OAuth2 client_credentials using a confidential client. Falls
        back to the legacy password grant only when username/password are set
        and no client secret is configured.
        """
        url = f"{self.cfg.base_url}/realms/{self.cfg.admin_realm}/protocol/openid-connect/token"
        if self.cfg.admin_client_secret:
            data = {
                "grant_type": "client_credentials",
                "client_id": self.cfg.admin_client_id,
                "client_secret": self.cfg.admin_client_secret,
            }
        else:
            if _is_prod_like():
                raise IdentityProviderError("password_grant_disabled_in_prod")
            if not self.cfg.admin_username or not self.cfg.admin_password:
                # Set KC_ADMIN_CLIENT_SECRET, or KC_ADMIN_USERNAME/PASSWORD in dev.
                logger.error("Keycloak admin credentials missing")
                raise IdentityProviderError("admin_credentials_missing")
            data = {
                "grant_type": "password",
                "client_id": self.cfg.admin_client_id,
                "username": self.cfg.admin_username,
                "password": self.cfg.admin_password,
            }
        r = self._request("POST", url, data=data, authorized=False)
        if r.status_code != 200:
            raise IdentityProviderError("admin_token_failed")
        tok = (r.json() or {}).get("access_token")
        if not tok:
            raise IdentityProviderError("admin_token_missing")
        return str(tok)

    def _request(self, method: str, url: str, *, authorized: bool = True, **kwargs) -> requests.Response:
        if authorized:
            headers = dict(kwargs.pop("headers", None) or {})
            headers["Authorization"] = f"Bearer {self._token()}"
            headers.setdefault("Content-Type", "application/json")
            kwargs["headers"] = headers
        try:
            return self._http.request(
                method, url, timeout=HTTP_TIMEOUT_SECONDS, verify=self._verify_opt(), **kwargs
            )
        except requests.RequestException as exc:
            logger.warning("Keycloak %s call failed: %s", method, exc.__class__.__name__)
            raise IdentityProviderError("provider_unreachable") from exc

    # --- accounts ------------------------------------------------------------

    def _realm_roles(self, account_id: str) -> List[dict]:
        r = self._request("GET", f"{self.cfg.admin_base}/users/{account_id}/role-mappings/realm")
        if r.status_code == 404:
            raise AccountNotFoundError()
        if r.status_code != 200:
            raise IdentityProviderError("role_lookup_failed")
        arr = r.json() or []
        return [x for x in arr if isinstance(x, dict)]

    def get_account(self, account_id: str) -> IdentityAccount:
        r = self._request("GET", f"{self.cfg.admin_base}/users/{account_id}")
        if r.status_code == 404:
            raise AccountNotFoundError()
        if r.status_code != 200:
            raise IdentityProviderError("account_lookup_failed")
        u = r.json() or {}
        names = {x.get("name") for x in self._realm_roles(account_id)} & ALLOWED_ROLES
        role: Optional[str] = None
        if len(names) == 1:
            role = names.pop()
        elif names:
            # Only reachable through manual edits in the Keycloak console.
            logger.warning("Account %s maps several roles; treating as unset", account_id)
        return IdentityAccount(
            id=str(u.get("id") or account_id),
            email=str(u.get("email") or ""),
            role=role,
            verified=bool(u.get("emailVerified")),
            first_name=str(u.get("firstName") or ""),
            last_name=str(u.get("lastName") or ""),
        )

    def _find_id_by_email(self, email: str) -> str:
        q = self._request("GET", f"{self.cfg.admin_base}/users", params={"email": email, "exact": True})
        if q.status_code != 200:
            raise IdentityProviderError("user_lookup_failed")
        arr = q.json() or []
        if not arr or not arr[0].get("id"):
            raise IdentityProviderError("user_id_missing")
        return str(arr[0]["id"])

    def create_account(
        self, *, email: str, password: str, first_name: str, last_name: str, role: str
    ) -> str:
        """Create the user, set its password and map exactly `role`.

        Raises AccountExistsError on a 409. If a step after user creation
        fails, the half-created user is removed before raising so the
        provider never keeps an account without a password or role.
        """
        if not is_valid_role(role):
            raise ValueError("invalid_role")
        payload = {
            "username": email,
            "email": email,
            "enabled": True,
            "emailVerified": False,
            "firstName": first_name,
            "lastName": last_name or "",
        }
        r = self._request("POST", f"{self.cfg.admin_base}/users", json=payload)
        if r.status_code == 409:
            raise AccountExistsError()
        if r.status_code not in (201, 204):
            raise IdentityProviderError("user_create_failed")
        location = r.headers.get("Location") or ""
        user_id = location.rstrip("/").rsplit("/", 1)[-1] if location else self._find_id_by_email(email)
        try:
            pw = {"type": "password", "value": password, "temporary": False}
            pr = self._request("PUT", f"{self.cfg.admin_base}/users/{user_id}/reset-password", json=pw)
            if pr.status_code != 204:
                raise IdentityProviderError("password_set_failed")
            self.set_role(user_id, role)
        except IdentityProviderError:
            try:
                self.delete_account(user_id)
            except IdentityProviderError as cleanup_exc:
                logger.error("Rollback of half-created account %s failed: %s", user_id, cleanup_exc.code)
            raise
        logger.info("Provider account %s created (role=%s)", user_id, role)
        return user_id

    def update_account(self, account_id: str, fields: Mapping[str, str]) -> None:
        mapping = {"email": "email", "first_name": "firstName", "last_name": "lastName"}
        payload = {mapping[k]: v for k, v in fields.items() if k in mapping}
        if not payload:
            return
        r = self._request("PUT", f"{self.cfg.admin_base}/users/{account_id}", json=payload)
        if r.status_code == 404:
            raise AccountNotFoundError()
        if r.status_code != 204:
            raise IdentityProviderError("user_update_failed")

    def _role_representation(self, role_name: str) -> Dict[str, object]:
        role = self._request("GET", f"{self.cfg.admin_base}/roles/{role_name}")
        if role.status_code != 200:
            raise IdentityProviderError("role_not_found")
        role_json = role.json()
        if not role_json or "id" not in role_json:
            raise IdentityProviderError("role_not_found")
        return role_json

    def set_role(self, account_id: str, role: str) -> None:
        if not is_valid_role(role):
            raise ValueError("invalid_role")
        mapping_url = f"{self.cfg.admin_base}/users/{account_id}/role-mappings/realm"
        current = self._realm_roles(account_id)
        stale = [x for x in current if x.get("name") in ALLOWED_ROLES and x.get("name") != role]
        if not any(x.get("name") == role for x in current):
            add = self._request("POST", mapping_url, json=[self._role_representation(role)])
            if add.status_code != 204:
                raise IdentityProviderError("role_assign_failed")
        if stale:
            rm = self._request("DELETE", mapping_url, json=stale)
            if rm.status_code != 204:
                raise IdentityProviderError("role_unassign_failed")

    def delete_account(self, account_id: str) -> None:
        r = self._request("DELETE", f"{self.cfg.admin_base}/users/{account_id}")
        if r.status_code == 404:
            raise AccountNotFoundError()
        if r.status_code != 204:
            raise IdentityProviderError("user_delete_failed")
