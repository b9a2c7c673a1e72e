"""
Shared authentication utilities.

Why:
    Keep bearer-token parsing in one place so the middleware and tests agree
    on what counts as "no credentials" versus "bad credentials".

Design:
    Pure helpers: no framework objects, no I/O.
"""

from __future__ import annotations

from typing import Mapping, Optional


def bearer_token(headers: Mapping[str, str]) -> Optional[str]:
    """Return the bearer token from an Authorization header, or None.

    Only the `Bearer` scheme is accepted (case-insensitive); an empty token
    counts as missing.
    """
    raw = headers.get("authorization") or headers.get("Authorization") or ""
    scheme, _, token = raw.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def is_public_path(path: str, method: str = "GET") -> bool:
    """Paths reachable without a caller identity.

    Invitation peek/accept and the provider webhook are anonymous by nature;
    the webhook authenticates through its signature instead.
    """
    if path in ("/health", "/favicon.ico"):
        return True
    if path.startswith("/api/invitations/"):
        return True
    return path == "/api/webhooks/identity" and method.upper() == "POST"
