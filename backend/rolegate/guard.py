"""
Authorization guard: exact-match role checks against the provider.

The role is fetched from the identity provider on every call and never
cached, so an admin's role change takes effect on the next request. Roles are
compared by equality: `admin` does not pass an `educator` check. Routes that
accept several roles compose guards explicitly.
"""
from __future__ import annotations

import logging
from typing import Optional

from .domain import FORBIDDEN, LOOKUP_FAILED, Result
from .errors import AccountNotFoundError, IdentityProviderError
from .keycloak import IdentityProvider

logger = logging.getLogger("rolegate.guard")


class AuthorizationGuard:
    def __init__(self, idp: IdentityProvider) -> None:
        self._idp = idp

    def current_role(self, caller_id: str) -> Optional[str]:
        """Return the caller's provider role (None when unset).

        Raises IdentityProviderError when the provider cannot answer.
        """
        return self._idp.get_account(caller_id).role

    def require_role(self, caller_id: str, role: str) -> Result[str]:
        """Authorize `caller_id` for exactly `role`.

        Returns the caller id on success; `forbidden` when the role differs or
        the account is unknown; `lookup_failed` when the provider is
        unreachable, so callers can tell "denied" from "indeterminate".
        """
        if not caller_id:
            return Result.failure(FORBIDDEN)
        try:
            current = self.current_role(caller_id)
        except AccountNotFoundError:
            return Result.failure(FORBIDDEN)
        except IdentityProviderError as exc:
            logger.warning("Role lookup failed for %s: %s", caller_id, exc.code)
            return Result.failure(LOOKUP_FAILED)
        if current != role:
            return Result.failure(FORBIDDEN)
        return Result.success(caller_id)
