"""
Invitation workflow: turn a redeemed token into a provider account plus its
local projection.

Ordering is fixed and fail-safe toward token reuse:

1. consume the token (it is spent from here on, whatever happens next);
2. validate the redeemer's input;
3. create the provider account with the invited email and role;
4. project it into the local account store.

A failure in step 3 or 4 leaves the token consumed. An admin then issues a
new invitation; the spent token is never refunded.
"""
from __future__ import annotations

import logging
import re
from typing import Optional

from .accounts import AccountStore
from .domain import (
    ACCOUNT_EXISTS,
    VALIDATION_ERROR,
    Account,
    Result,
    is_valid_role,
)
from .errors import AccountExistsError
from .invitations import TokenVault
from .keycloak import IdentityProvider, display_name

logger = logging.getLogger("rolegate.onboarding")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _blank(value: Optional[str]) -> bool:
    return not (value or "").strip()


class InvitationWorkflow:
    def __init__(self, vault: TokenVault, accounts: AccountStore, idp: IdentityProvider) -> None:
        self._vault = vault
        self._accounts = accounts
        self._idp = idp

    def redeem(
        self,
        token: str,
        password: Optional[str],
        first_name: Optional[str],
        last_name: Optional[str] = None,
    ) -> Result[str]:
        """Redeem an invitation and return the new account id.

        Errors: not_found / expired / already_used (token), validation_error,
        account_exists. Provider outages raise IdentityProviderError.
        """
        consumed = self._vault.consume(token)
        if not consumed.ok:
            return Result.failure(consumed.error, consumed.detail)
        inv = consumed.value
        if _blank(password) or _blank(first_name):
            return Result.failure(VALIDATION_ERROR, "password_and_first_name_required")
        result = self._create(inv.email, password, first_name, last_name, inv.role)
        if result.ok:
            logger.info("Invitation redeemed by %s as %s", inv.email, inv.role)
        return result

    def direct_create(
        self,
        email: Optional[str],
        password: Optional[str],
        first_name: Optional[str],
        last_name: Optional[str] = None,
        role: str = "student",
    ) -> Result[str]:
        """Create an account without a token (admin path; guarded at the boundary)."""
        if _blank(email) or _blank(password) or _blank(first_name):
            return Result.failure(VALIDATION_ERROR, "email_password_and_first_name_required")
        if not _EMAIL_RE.match(email.strip()):
            return Result.failure(VALIDATION_ERROR, "invalid_email")
        if not is_valid_role(role):
            return Result.failure(VALIDATION_ERROR, "invalid_role")
        return self._create(email.strip(), password, first_name, last_name, role)

    def _create(self, email: str, password: str, first_name: str, last_name: Optional[str], role: str) -> Result[str]:
        first = first_name.strip()
        last = (last_name or "").strip()
        try:
            account_id = self._idp.create_account(
                email=email, password=password, first_name=first, last_name=last, role=role
            )
        except AccountExistsError:
            logger.info("Account creation refused: %s already registered", email)
            return Result.failure(ACCOUNT_EXISTS)
        # The provider's created event may already have projected the account.
        self._accounts.insert_if_absent(
            Account(id=account_id, email=email, name=display_name(first, last, email))
        )
        return Result.success(account_id)
