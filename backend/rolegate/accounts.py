"""
Local account projection store.

The provider is the source of truth for account identifiers and roles; this
store only caches profile data (email, name, avatar, enrollments) keyed by
the provider id. Writes come from reconciliation events and from the
invitation workflow.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from .domain import Account
from .stores import InMemoryKeyedStore, KeyedStore

logger = logging.getLogger("rolegate.accounts")


class AccountStore:
    def __init__(self, store: KeyedStore | None = None) -> None:
        self._store = store if store is not None else InMemoryKeyedStore()

    def get(self, account_id: str) -> Optional[Account]:
        doc = self._store.get(account_id)
        return Account.from_doc(doc) if doc else None

    def insert_if_absent(self, account: Account) -> bool:
        return self._store.insert_if_absent(account.id, account.to_doc())

    def update(self, account_id: str, *, email: str, name: str, image_url: str) -> Optional[Account]:
        """Overwrite profile fields; returns None when no record exists.

        Enrollments are preserved. The read-modify-write retries on a
        concurrent change so an enrollment written meanwhile is not lost.
        """
        for _ in range(5):
            doc = self._store.get(account_id)
            if doc is None:
                return None
            new = dict(doc, email=email, name=name, image_url=image_url)
            if self._store.compare_and_swap(account_id, doc, new):
                return Account.from_doc(new)
        raise RuntimeError("account_update_contention")

    def delete(self, account_id: str) -> bool:
        return self._store.delete(account_id)

    def list(self) -> List[Account]:
        return [Account.from_doc(d) for d in self._store.values()]
