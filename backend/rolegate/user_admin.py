"""
Admin user management: list, delete and re-role accounts.

The provider owns roles and credentials; the local store only mirrors
profiles. Deletion therefore starts at the provider so a failure there never
leaves a provider account without its local projection being reported gone.
"""
from __future__ import annotations

import logging
from typing import List

from .accounts import AccountStore
from .domain import DEFAULT_ROLE, NOT_FOUND, VALIDATION_ERROR, Result, is_valid_role
from .errors import AccountNotFoundError
from .keycloak import IdentityProvider

logger = logging.getLogger("rolegate.user_admin")


class UserAdministration:
    def __init__(self, accounts: AccountStore, idp: IdentityProvider) -> None:
        self._accounts = accounts
        self._idp = idp

    def list_users(self) -> List[dict]:
        out: List[dict] = []
        for account in sorted(self._accounts.list(), key=lambda a: a.email.lower()):
            entry = account.to_doc()
            try:
                remote = self._idp.get_account(account.id)
                entry["role"] = remote.role or DEFAULT_ROLE
                entry["email_verified"] = remote.verified
            except Exception as exc:
                logger.warning("Provider enrichment failed for %s: %s", account.id, exc.__class__.__name__)
            out.append(entry)
        return out

    def delete_user(self, account_id: str) -> Result[None]:
        try:
            self._idp.delete_account(account_id)
        except AccountNotFoundError:
            return Result.failure(NOT_FOUND)
        # The provider's deleted event may arrive first; a missing row is fine.
        self._accounts.delete(account_id)
        logger.info("Account %s deleted by admin", account_id)
        return Result.success()

    def change_role(self, account_id: str, role: str) -> Result[str]:
        if not is_valid_role(role):
            return Result.failure(VALIDATION_ERROR, "invalid_role")
        try:
            self._idp.set_role(account_id, role)
        except AccountNotFoundError:
            return Result.failure(NOT_FOUND)
        logger.info("Role of %s set to %s", account_id, role)
        return Result.success(role)
