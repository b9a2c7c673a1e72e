"""
Bearer access-token verification against a realm JWKS.

Uses a symmetric (oct/HS256) JWK so tokens can be minted in-process; the
verification path is the same as for the realm's RSA keys.
"""
from __future__ import annotations

import base64
import time

import pytest
from jose import jwt

from rolegate.keycloak import KeycloakConfig
from rolegate.tokens import JWKSCache, TokenVerificationError, verify_access_token

SECRET = "unit-test-hmac-secret-0123456789abcdef"
CFG = KeycloakConfig(base_url="http://kc:8080", realm="rolegate", client_id="rolegate-web")
ISSUER = "http://kc:8080/realms/rolegate"


def _jwk(kid: str = "k1") -> dict:
    k = base64.urlsafe_b64encode(SECRET.encode("utf-8")).decode("ascii").rstrip("=")
    return {"kty": "oct", "kid": kid, "alg": "HS256", "k": k}


class _StaticCache(JWKSCache):
    def __init__(self, jwks: dict, **kwargs):
        super().__init__(**kwargs)
        self.fetches = 0
        self._jwks = jwks

    def _fetch(self, cfg):
        self.fetches += 1
        return self._jwks


def _mint(*, kid: str = "k1", **overrides) -> str:
    now = int(time.time())
    claims = {"sub": "u-123", "iss": ISSUER, "aud": "account", "iat": now, "exp": now + 300}
    claims.update(overrides)
    claims = {k: v for k, v in claims.items() if v is not None}
    return jwt.encode(claims, SECRET, algorithm="HS256", headers={"kid": kid})


def test_valid_token_returns_claims():
    cache = _StaticCache({"keys": [_jwk()]})
    claims = verify_access_token(token=_mint(), cfg=CFG, cache=cache)
    assert claims["sub"] == "u-123"


def test_jwks_is_cached_between_calls():
    cache = _StaticCache({"keys": [_jwk()]})
    verify_access_token(token=_mint(), cfg=CFG, cache=cache)
    verify_access_token(token=_mint(), cfg=CFG, cache=cache)
    assert cache.fetches == 1


def test_expired_token_is_rejected():
    cache = _StaticCache({"keys": [_jwk()]})
    past = int(time.time()) - 3600
    with pytest.raises(TokenVerificationError) as ei:
        verify_access_token(token=_mint(iat=past - 60, exp=past), cfg=CFG, cache=cache)
    assert ei.value.code == "invalid_token"


def test_foreign_issuer_is_rejected():
    cache = _StaticCache({"keys": [_jwk()]})
    with pytest.raises(TokenVerificationError):
        verify_access_token(token=_mint(iss="http://kc:8080/realms/other"), cfg=CFG, cache=cache)


def test_unknown_kid_is_rejected():
    cache = _StaticCache({"keys": [_jwk("other")]})
    with pytest.raises(TokenVerificationError) as ei:
        verify_access_token(token=_mint(), cfg=CFG, cache=cache)
    assert ei.value.code == "unknown_kid"


def test_audience_checked_only_when_configured():
    cache = _StaticCache({"keys": [_jwk()]})
    token = _mint(aud="account")
    assert verify_access_token(token=token, cfg=CFG, cache=cache)["sub"] == "u-123"
    with pytest.raises(TokenVerificationError):
        verify_access_token(token=token, cfg=CFG, cache=cache, expected_audience="rolegate-web")


def test_token_without_subject_is_rejected():
    cache = _StaticCache({"keys": [_jwk()]})
    with pytest.raises(TokenVerificationError) as ei:
        verify_access_token(token=_mint(sub=None), cfg=CFG, cache=cache)
    assert ei.value.code == "missing_sub"


def test_garbage_token_is_malformed():
    with pytest.raises(TokenVerificationError) as ei:
        verify_access_token(token="not-a-jwt", cfg=CFG, cache=_StaticCache({"keys": []}))
    assert ei.value.code == "malformed_token"


def test_jwks_fetch_failure_surfaces_as_verification_error(monkeypatch: pytest.MonkeyPatch):
    import requests

    def _down(*args, **kwargs):
        raise requests.ConnectionError("down")

    monkeypatch.setattr(requests, "get", _down)
    with pytest.raises(TokenVerificationError) as ei:
        verify_access_token(token=_mint(), cfg=CFG, cache=JWKSCache())
    assert ei.value.code == "jwks_fetch_failed"


def test_rotated_key_triggers_one_refetch():
    now = [1_000.0]
    cache = _StaticCache({"keys": [_jwk("old")]}, clock=lambda: now[0])
    verify_access_token(token=_mint(kid="old"), cfg=CFG, cache=cache)

    cache._jwks = {"keys": [_jwk("old"), _jwk("k1")]}
    now[0] += 60
    assert verify_access_token(token=_mint(), cfg=CFG, cache=cache)["sub"] == "u-123"
    verify_access_token(token=_mint(kid="old"), cfg=CFG, cache=cache)
    assert cache.fetches == 2


def test_unknown_kids_do_not_refetch_on_every_request():
    now = [1_000.0]
    cache = _StaticCache({"keys": [_jwk("k1")]}, clock=lambda: now[0])
    verify_access_token(token=_mint(), cfg=CFG, cache=cache)
    for i in range(5):
        now[0] += 1
        with pytest.raises(TokenVerificationError) as ei:
            verify_access_token(token=_mint(kid=f"forged-{i}"), cfg=CFG, cache=cache)
        assert ei.value.code == "unknown_kid"
    assert cache.fetches == 1
