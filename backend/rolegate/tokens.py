"""
Access-token verification for callers of the HTTP boundary.

Why: Keep cryptographic validation outside the web adapter so it can be unit
tested on its own. Only the subject (`sub`) is taken from a verified token;
roles are always asked from the identity provider.

Security: Validates the signature against the realm JWKS and checks issuer and
expiry. The audience is checked only when `expected_audience` is given
(Keycloak access tokens commonly carry `account` as audience).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Optional
import logging
import threading
import time

import requests
from jose import jwt
from jose.exceptions import JOSEError

from .keycloak import KeycloakConfig

logger = logging.getLogger("rolegate.tokens")


class TokenVerificationError(Exception):
    """Raised when an access token fails verification."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


@dataclass
class _KeySet:
    keys: Dict[str, Dict[str, object]]
    fetched_at: float


class JWKSCache:
    """Realm signing keys, indexed per issuer by key id.

    A key set is refetched once it is older than `ttl_seconds`, and early when
    a token names a key id the cached set does not hold (realm key rotation).
    Early refetches are spaced at least `min_refresh_seconds` apart, so tokens
    carrying made-up key ids cannot force a fetch per request.
    """

    def __init__(
        self,
        ttl_seconds: int = 300,
        min_refresh_seconds: int = 30,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.min_refresh_seconds = min_refresh_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._sets: Dict[str, _KeySet] = {}

    def key_for(self, cfg: KeycloakConfig, kid: str) -> Optional[Dict[str, object]]:
        # The lock is held across the fetch; concurrent misses share one request.
        with self._lock:
            now = self._clock()
            entry = self._sets.get(cfg.issuer)
            age = None if entry is None else now - entry.fetched_at
            if entry is None or age >= self.ttl_seconds:
                entry = self._refresh(cfg, now)
            elif kid not in entry.keys and age >= self.min_refresh_seconds:
                logger.info("Signing key %s not cached for %s; refetching JWKS", kid, cfg.issuer)
                entry = self._refresh(cfg, now)
            return entry.keys.get(kid)

    def _refresh(self, cfg: KeycloakConfig, now: float) -> _KeySet:
        jwks = self._fetch(cfg)
        keys = jwks.get("keys")
        indexed = {
            str(k["kid"]): k
            for k in (keys if isinstance(keys, list) else [])
            if isinstance(k, dict) and k.get("kid")
        }
        entry = _KeySet(keys=indexed, fetched_at=now)
        self._sets[cfg.issuer] = entry
        return entry

    def _fetch(self, cfg: KeycloakConfig) -> Dict[str, object]:
        url = f"{cfg.issuer}/protocol/openid-connect/certs"
        try:
            resp = requests.get(url, timeout=5, verify=cfg.ca_bundle or True)
        except requests.RequestException as exc:
            logger.warning("JWKS fetch failed for %s: %s", cfg.issuer, exc.__class__.__name__)
            raise TokenVerificationError("jwks_fetch_failed") from exc
        if resp.status_code != 200:
            logger.warning("JWKS fetch for %s returned HTTP %s", cfg.issuer, resp.status_code)
            raise TokenVerificationError("jwks_fetch_failed")
        try:
            jwks = resp.json()
        except ValueError as exc:
            raise TokenVerificationError("jwks_invalid") from exc
        if not isinstance(jwks, dict) or "keys" not in jwks:
            raise TokenVerificationError("jwks_invalid")
        return jwks


JWKS_CACHE = JWKSCache()


def verify_access_token(
    *,
    token: str,
    cfg: KeycloakConfig,
    cache: JWKSCache | None = None,
    expected_audience: Optional[str] = None,
) -> Dict[str, object]:
    """Validate a bearer access token and return its claims.

    Raises
    ------
    TokenVerificationError:
        When the token is malformed, signed by an unknown key, issued by a
        different realm, expired, or has no subject.
    """
    cache = cache or JWKS_CACHE
    try:
        header = jwt.get_unverified_header(token)
    except JOSEError as exc:
        raise TokenVerificationError("malformed_token") from exc
    kid = header.get("kid")
    if not kid:
        raise TokenVerificationError("missing_kid")
    key_dict = cache.key_for(cfg, str(kid))
    if not key_dict:
        raise TokenVerificationError("unknown_kid")

    try:
        claims = jwt.decode(
            token,
            key_dict,
            algorithms=[key_dict.get("alg", "RS256")],
            audience=expected_audience,
            issuer=cfg.issuer,
            options={
                "verify_aud": expected_audience is not None,
                "verify_at_hash": False,
                "leeway": 5,
            },
        )
    except JOSEError as exc:
        raise TokenVerificationError("invalid_token") from exc
    if not claims.get("sub"):
        raise TokenVerificationError("missing_sub")
    return claims
