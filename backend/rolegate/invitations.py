"""
Invitation token vault: single-use, time-limited onboarding credentials.

Why:
    Admins invite people with a pre-assigned email and role. The bearer of the
    token may create exactly one account. The vault exclusively owns token
    state; nothing else mutates it.

Security:
    - Tokens carry 256 bits from `secrets` and are rendered as hex.
    - Never log token values; log the email at most.

Concurrency:
    `consume` is a compare-and-swap on the stored document (`used: False ->
    True`). Concurrent callers racing on one token see exactly one success;
    the others re-read the record and observe `already_used`.

Expiry is evaluated lazily from the injected clock. Expired tokens stay in
the store, inert, until revoked.
"""
from __future__ import annotations

import logging
import secrets
import time
from dataclasses import asdict, dataclass
from typing import Callable, List, Optional

from .domain import (
    ALREADY_USED,
    EXPIRED,
    NOT_FOUND,
    Result,
    is_valid_role,
)
from .stores import InMemoryKeyedStore, KeyedStore

logger = logging.getLogger("rolegate.invitations")

TOKEN_BYTES = 32


@dataclass
class Invitation:
    token: str
    email: str
    role: str
    created_at: int
    expires_at: int
    used: bool = False

    def is_expired(self, now: float) -> bool:
        # Timestamps are whole seconds; compare on the same scale.
        return int(now) > self.expires_at

    def to_doc(self) -> dict:
        return asdict(self)

    @classmethod
    def from_doc(cls, doc: dict) -> "Invitation":
        return cls(
            token=str(doc["token"]),
            email=str(doc["email"]),
            role=str(doc["role"]),
            created_at=int(doc["created_at"]),
            expires_at=int(doc["expires_at"]),
            used=bool(doc.get("used", False)),
        )


@dataclass(frozen=True)
class InvitationView:
    """Administrative listing entry; `expired` is derived, never stored."""

    invitation: Invitation
    expired: bool


class TokenVault:
    def __init__(self, store: KeyedStore | None = None, *, clock: Callable[[], float] = time.time) -> None:
        self._store = store if store is not None else InMemoryKeyedStore()
        self._clock = clock

    def issue(self, email: str, role: str, ttl_hours: float) -> Invitation:
        """Create and store a fresh invitation.

        Multiple live invitations for the same email are allowed; each one is
        independently redeemable until first use.

        Raises ValueError on an unknown role or a non-positive TTL.
        """
        if not is_valid_role(role):
            raise ValueError("invalid_role")
        if ttl_hours is None or ttl_hours <= 0:
            raise ValueError("invalid_ttl")
        now = int(self._clock())
        inv = Invitation(
            token=secrets.token_hex(TOKEN_BYTES),
            email=email,
            role=role,
            created_at=now,
            expires_at=now + int(ttl_hours * 3600),
        )
        # 256 random bits; a collision here means the RNG is broken.
        if not self._store.insert_if_absent(inv.token, inv.to_doc()):
            raise RuntimeError("token_collision")
        logger.info("Invitation issued for %s (role=%s, ttl_hours=%s)", email, role, ttl_hours)
        return inv

    def _classify(self, doc: Optional[dict]) -> Result[Invitation]:
        if doc is None:
            return Result.failure(NOT_FOUND)
        inv = Invitation.from_doc(doc)
        if inv.used:
            return Result.failure(ALREADY_USED)
        if inv.is_expired(self._clock()):
            return Result.failure(EXPIRED)
        return Result.success(inv)

    def peek(self, token: str) -> Result[Invitation]:
        """Read-only verification used before redemption."""
        if not token:
            return Result.failure(NOT_FOUND)
        return self._classify(self._store.get(token))

    def consume(self, token: str) -> Result[Invitation]:
        """Validate and atomically mark the token used."""
        if not token:
            return Result.failure(NOT_FOUND)
        doc = self._store.get(token)
        checked = self._classify(doc)
        if not checked.ok:
            return checked
        spent = dict(doc, used=True)
        if not self._store.compare_and_swap(token, doc, spent):
            # Lost the race: report whatever state the winner left behind.
            lost = self._classify(self._store.get(token))
            return lost if not lost.ok else Result.failure(ALREADY_USED)
        return Result.success(Invitation.from_doc(spent))

    def revoke(self, token: str) -> Result[None]:
        if not token or not self._store.delete(token):
            return Result.failure(NOT_FOUND)
        logger.info("Invitation revoked")
        return Result.success()

    def list(self) -> List[InvitationView]:
        now = self._clock()
        items = [Invitation.from_doc(d) for d in self._store.values()]
        items.sort(key=lambda i: i.created_at, reverse=True)
        return [InvitationView(invitation=i, expired=i.is_expired(now)) for i in items]
