"""
Role-gating domain constants, records and the typed result envelope.

Why:
- Centralize allowed roles so the web layer, the ledger and the provider
  adapter cannot drift apart.
- Expected conditions (not found, expired, conflicts, forbidden) are returned
  as `Result` values with a stable error code. Only unexpected failures
  (provider unreachable, store down) are raised.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Generic, Optional, TypeVar

# Flat categories compared by equality; no hierarchy between them.
ALLOWED_ROLES = frozenset({"student", "educator", "admin"})
DEFAULT_ROLE = "student"
ELEVATED_ROLES = frozenset({"educator", "admin"})

# Error codes shared by all components. The web adapter maps them to HTTP.
NOT_FOUND = "not_found"
EXPIRED = "expired"
ALREADY_USED = "already_used"
ALREADY_PENDING = "already_pending"
ALREADY_ELEVATED = "already_elevated"
ACCOUNT_EXISTS = "account_exists"
NOT_PENDING = "not_pending"
VALIDATION_ERROR = "validation_error"
FORBIDDEN = "forbidden"
LOOKUP_FAILED = "lookup_failed"
VERIFICATION_FAILED = "verification_failed"

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a core operation: either `value` or an `error` code."""

    value: Optional[T] = None
    error: Optional[str] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T | None = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: str, detail: str | None = None) -> "Result[T]":
        return cls(error=error, detail=detail)


def is_valid_role(role: object) -> bool:
    return isinstance(role, str) and role in ALLOWED_ROLES


@dataclass
class Account:
    """Local projection of the provider account. Never holds a role."""

    id: str
    email: str = ""
    name: str = ""
    image_url: str = ""
    enrolled_courses: list[str] = field(default_factory=list)

    def to_doc(self) -> dict:
        return asdict(self)

    @classmethod
    def from_doc(cls, doc: dict) -> "Account":
        return cls(
            id=str(doc["id"]),
            email=str(doc.get("email") or ""),
            name=str(doc.get("name") or ""),
            image_url=str(doc.get("image_url") or ""),
            enrolled_courses=list(doc.get("enrolled_courses") or []),
        )


@dataclass(frozen=True)
class IdentityAccount:
    """The provider's view of an account (role lives here only)."""

    id: str
    email: str
    role: Optional[str]
    verified: bool = False
    first_name: str = ""
    last_name: str = ""


__all__ = [
    "ALLOWED_ROLES",
    "DEFAULT_ROLE",
    "ELEVATED_ROLES",
    "Account",
    "IdentityAccount",
    "Result",
    "is_valid_role",
]
