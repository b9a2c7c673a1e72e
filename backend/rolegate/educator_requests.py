"""
Educator request ledger: an account's petition for the educator role.

State machine per request::

    (none) --submit--> pending --approve--> approved   [terminal]
                       pending --reject---> rejected   [terminal]

Invariants:
- At most one pending request per account. Enforced through a pending index
  keyed by account id (`insert_if_absent`), so concurrent submits race on a
  single key and exactly one wins.
- Transitions are compare-and-swap on the stored document, so reviewers on
  different nodes sharing one store get one success and one `not_pending`.
- Approve first claims the pending record (a `review_claim` marker written by
  CAS), then changes the provider role, then commits. While the claim is
  fresh a concurrent reject sees `not_pending` (`under_review`). A provider
  failure releases the claim and leaves the request pending. A claim older
  than REVIEW_CLAIM_SECONDS (crashed reviewer) may be taken over.
- Records are never deleted; they are the audit trail.
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Callable, List, Optional

from .accounts import AccountStore
from .domain import (
    ALREADY_ELEVATED,
    ALREADY_PENDING,
    ELEVATED_ROLES,
    NOT_FOUND,
    NOT_PENDING,
    VALIDATION_ERROR,
    Result,
)
from .keycloak import IdentityProvider
from .stores import InMemoryKeyedStore, KeyedStore

logger = logging.getLogger("rolegate.educator_requests")

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUSES = frozenset({STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED})

DEFAULT_REASON = "I want to become an educator"
DEFAULT_REJECTION_REASON = "No reason provided"
UNDER_REVIEW = "under_review"
REVIEW_CLAIM_SECONDS = 120


@dataclass
class EducatorRequest:
    id: str
    account_id: str
    reason: str
    status: str
    requested_at: float
    reviewed_at: Optional[float] = None
    reviewed_by: Optional[str] = None
    rejection_reason: Optional[str] = None

    def to_doc(self) -> dict:
        return asdict(self)

    @classmethod
    def from_doc(cls, doc: dict) -> "EducatorRequest":
        return cls(
            id=str(doc["id"]),
            account_id=str(doc["account_id"]),
            reason=str(doc.get("reason") or ""),
            status=str(doc["status"]),
            requested_at=float(doc["requested_at"]),
            reviewed_at=doc.get("reviewed_at"),
            reviewed_by=doc.get("reviewed_by"),
            rejection_reason=doc.get("rejection_reason"),
        )


class EducatorRequestLedger:
    def __init__(
        self,
        idp: IdentityProvider,
        *,
        store: KeyedStore | None = None,
        pending_index: KeyedStore | None = None,
        accounts: AccountStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._idp = idp
        self._store = store if store is not None else InMemoryKeyedStore()
        self._pending = pending_index if pending_index is not None else InMemoryKeyedStore()
        self._accounts = accounts
        self._clock = clock

    # --- submit --------------------------------------------------------------

    def submit(self, account_id: str, reason: Optional[str] = None) -> Result[EducatorRequest]:
        """Open a pending request for `account_id`.

        Errors: already_pending, already_elevated. Provider outages during
        the role check raise IdentityProviderError.
        """
        if not account_id:
            return Result.failure(VALIDATION_ERROR, "account_id_required")
        if self._pending.get(account_id) is not None:
            return Result.failure(ALREADY_PENDING)
        role = self._idp.get_account(account_id).role
        if role in ELEVATED_ROLES:
            return Result.failure(ALREADY_ELEVATED, role)

        req = EducatorRequest(
            id=str(uuid.uuid4()),
            account_id=account_id,
            reason=(reason or "").strip() or DEFAULT_REASON,
            status=STATUS_PENDING,
            requested_at=self._clock(),
        )
        if not self._pending.insert_if_absent(account_id, {"request_id": req.id}):
            return Result.failure(ALREADY_PENDING)
        try:
            self._store.put(req.id, req.to_doc())
        except Exception:
            # Without the record the index entry would block every later submit.
            self._pending.delete(account_id)
            raise
        logger.info("Educator request %s submitted by %s", req.id, account_id)
        return Result.success(req)

    # --- queries -------------------------------------------------------------

    def get(self, request_id: str) -> Optional[EducatorRequest]:
        doc = self._store.get(request_id) if request_id else None
        return EducatorRequest.from_doc(doc) if doc else None

    def status_for(self, account_id: str) -> Optional[EducatorRequest]:
        """Latest request of the account by `requested_at`, or None."""
        mine = [EducatorRequest.from_doc(d) for d in self._store.values() if d.get("account_id") == account_id]
        if not mine:
            return None
        return max(mine, key=lambda r: r.requested_at)

    def list_by_status(self, status: Optional[str] = None) -> List[dict]:
        """All requests (optionally filtered), newest first, each with a
        best-effort `user_info` block. Enrichment failures degrade to the bare
        record and are only logged."""
        if status is not None and status not in STATUSES:
            return []
        items = [EducatorRequest.from_doc(d) for d in self._store.values()]
        if status is not None:
            items = [r for r in items if r.status == status]
        items.sort(key=lambda r: r.requested_at, reverse=True)
        return [self._enrich(r) for r in items]

    def _enrich(self, req: EducatorRequest) -> dict:
        entry = req.to_doc()
        try:
            local = self._accounts.get(req.account_id) if self._accounts is not None else None
            remote = self._idp.get_account(req.account_id)
            entry["user_info"] = {
                "name": (local.name if local else "") or "Unknown",
                "email": remote.email,
            }
        except Exception as exc:
            logger.warning("Profile enrichment failed for %s: %s", req.account_id, exc.__class__.__name__)
        return entry

    # --- review --------------------------------------------------------------

    def _load_pending(self, request_id: str) -> tuple[Optional[dict], Result]:
        doc = self._store.get(request_id) if request_id else None
        if doc is None:
            return None, Result.failure(NOT_FOUND)
        if doc.get("status") != STATUS_PENDING:
            return None, Result.failure(NOT_PENDING, str(doc.get("status")))
        if self._claim_is_fresh(doc):
            return None, Result.failure(NOT_PENDING, UNDER_REVIEW)
        return doc, Result.success()

    def _claim_is_fresh(self, doc: dict) -> bool:
        claim = doc.get("review_claim")
        if not isinstance(claim, dict):
            return False
        return self._clock() - float(claim.get("at") or 0) < REVIEW_CLAIM_SECONDS

    def _lost(self, request_id: str) -> Result[EducatorRequest]:
        current = self._store.get(request_id) or {}
        status = str(current.get("status", ""))
        return Result.failure(NOT_PENDING, UNDER_REVIEW if status == STATUS_PENDING else status)

    def _commit(self, expected: dict, new: dict) -> Result[EducatorRequest]:
        if not self._store.compare_and_swap(expected["id"], expected, new):
            return self._lost(expected["id"])
        self._pending.delete(expected["account_id"])
        return Result.success(EducatorRequest.from_doc(new))

    @staticmethod
    def _unclaimed(doc: dict) -> dict:
        return {k: v for k, v in doc.items() if k != "review_claim"}

    def approve(self, request_id: str, reviewer_id: str) -> Result[EducatorRequest]:
        """Grant the educator role and close the request.

        The provider update is the authoritative effect: if it raises, the
        claim is released, the exception propagates and the request stays
        pending.
        """
        doc, check = self._load_pending(request_id)
        if doc is None:
            return check
        claimed = dict(doc, review_claim={"by": reviewer_id, "at": self._clock()})
        if not self._store.compare_and_swap(request_id, doc, claimed):
            return self._lost(request_id)

        try:
            self._idp.set_role(doc["account_id"], "educator")
        except Exception:
            self._store.compare_and_swap(request_id, claimed, self._unclaimed(doc))
            raise
        new = dict(self._unclaimed(doc), status=STATUS_APPROVED, reviewed_at=self._clock(), reviewed_by=reviewer_id)
        result = self._commit(claimed, new)
        if result.ok:
            logger.info("Educator request %s approved by %s", request_id, reviewer_id)
        else:
            # Only reachable when the claim went stale mid-approval and was taken over.
            logger.warning("Educator request %s: role granted but claim lost (%s)", request_id, result.detail)
        return result

    def reject(self, request_id: str, reviewer_id: str, reason: Optional[str] = None) -> Result[EducatorRequest]:
        doc, check = self._load_pending(request_id)
        if doc is None:
            return check
        new = dict(
            self._unclaimed(doc),
            status=STATUS_REJECTED,
            reviewed_at=self._clock(),
            reviewed_by=reviewer_id,
            rejection_reason=(reason or "").strip() or DEFAULT_REJECTION_REASON,
        )
        result = self._commit(doc, new)
        if result.ok:
            logger.info("Educator request %s rejected by %s", request_id, reviewer_id)
        return result
