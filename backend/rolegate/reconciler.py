"""
Account reconciler: applies provider lifecycle events to the local store.

Why:
    The provider pushes created/updated/deleted events with at-least-once
    delivery and no ordering guarantee. Every handler is idempotent and
    tolerates out-of-order arrival:

    - created: an existing record means the event was already handled.
    - updated: a missing record is skipped (the create may still be in flight);
      no record is fabricated from a partial update.
    - deleted: a missing record is fine.
    - anything else: accepted and ignored.

Security:
    `receive` verifies the signature before looking at the event type. A
    payload failing verification never touches the store.
"""
from __future__ import annotations

import logging
from typing import Mapping

from .accounts import AccountStore
from .domain import DEFAULT_ROLE, VERIFICATION_FAILED, Account, Result
from .errors import IdentityProviderError, WebhookVerificationError
from .keycloak import IdentityProvider, display_name
from .webhooks import EVENT_CREATED, EVENT_DELETED, EVENT_UPDATED, IdentityEvent, WebhookVerifier

logger = logging.getLogger("rolegate.reconciler")

APPLIED_CREATED = "created"
APPLIED_ALREADY_EXISTS = "already_exists"
APPLIED_UPDATED = "updated"
APPLIED_UPDATE_SKIPPED = "update_skipped"
APPLIED_DELETED = "deleted"
APPLIED_DELETE_SKIPPED = "delete_skipped"
APPLIED_IGNORED = "ignored"


class AccountReconciler:
    def __init__(self, accounts: AccountStore, idp: IdentityProvider, verifier: WebhookVerifier) -> None:
        self._accounts = accounts
        self._idp = idp
        self._verifier = verifier

    def receive(self, raw_body: bytes, headers: Mapping[str, str]) -> Result[str]:
        """Verify and apply one inbound delivery."""
        try:
            event = self._verifier.verify(raw_body, headers)
        except WebhookVerificationError as exc:
            logger.warning("Webhook rejected: %s", exc.code)
            return Result.failure(VERIFICATION_FAILED, exc.code)
        return self.apply(event)

    def apply(self, event: IdentityEvent) -> Result[str]:
        """Dispatch an already verified event."""
        if event.kind == EVENT_CREATED:
            return self._on_created(event)
        if event.kind == EVENT_UPDATED:
            return self._on_updated(event)
        if event.kind == EVENT_DELETED:
            return self._on_deleted(event)
        logger.info("Ignoring unhandled event type %s", event.kind)
        return Result.success(APPLIED_IGNORED)

    def _on_created(self, event: IdentityEvent) -> Result[str]:
        account = Account(
            id=event.account_id,
            email=event.email,
            name=display_name(event.first_name, event.last_name, event.email),
            image_url=event.image_url,
        )
        if not self._accounts.insert_if_absent(account):
            logger.info("Account %s already exists; created event already handled", event.account_id)
            return Result.success(APPLIED_ALREADY_EXISTS)
        logger.info("Account %s projected from created event", event.account_id)
        if not event.role:
            self.assign_default_role(event.account_id)
        return Result.success(APPLIED_CREATED)

    def assign_default_role(self, account_id: str) -> bool:
        """Best-effort: give a new account the default role on the provider.

        Only applies when the provider still reports no role. The created
        event is emitted before an invitation's role mapping exists, so it
        may race with account creation; `set_role` replaces mappings and
        must not overwrite a role granted meanwhile.

        Runs after the projection is committed. Failures are logged and
        reported as False; they never fail the reconciliation.
        """
        try:
            current = self._idp.get_account(account_id).role
            if current:
                logger.info("Account %s already holds role %s; default not applied", account_id, current)
                return False
            self._idp.set_role(account_id, DEFAULT_ROLE)
        except IdentityProviderError as exc:
            logger.warning("Default role assignment failed for %s: %s", account_id, exc.code)
            return False
        logger.info("Default role %s assigned to %s", DEFAULT_ROLE, account_id)
        return True

    def _on_updated(self, event: IdentityEvent) -> Result[str]:
        updated = self._accounts.update(
            event.account_id,
            email=event.email,
            name=display_name(event.first_name, event.last_name, event.email),
            image_url=event.image_url,
        )
        if updated is None:
            logger.warning("Account %s not found for update; skipping", event.account_id)
            return Result.success(APPLIED_UPDATE_SKIPPED)
        return Result.success(APPLIED_UPDATED)

    def _on_deleted(self, event: IdentityEvent) -> Result[str]:
        if not self._accounts.delete(event.account_id):
            logger.info("Account %s already absent on delete", event.account_id)
            return Result.success(APPLIED_DELETE_SKIPPED)
        logger.info("Account %s deleted", event.account_id)
        return Result.success(APPLIED_DELETED)
