"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend, make `backend/` and
`backend/web/` importable, and give every test a fresh, in-memory service
bundle wired to a fake identity provider.
"""
import os
import sys
from pathlib import Path

import pytest

# Ensure modules in backend/ and backend/web are importable across tests
REPO_ROOT = Path(__file__).resolve().parents[2]
BACKEND_DIR = REPO_ROOT / "backend"
WEB_DIR = BACKEND_DIR / "web"
TESTS_DIR = BACKEND_DIR / "tests"
for p in (str(REPO_ROOT), str(BACKEND_DIR), str(WEB_DIR), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_env_toggles(monkeypatch: pytest.MonkeyPatch):
    """Keep env-driven behavior deterministic: default dev, memory stores."""
    for var in (
        "ROLEGATE_ENV",
        "STORE_BACKEND",
        "DATABASE_URL",
        "WEBHOOK_SIGNING_SECRET",
        "FRONTEND_URL",
        "INVITATION_DEFAULT_TTL_HOURS",
        "KC_EXPECTED_AUDIENCE",
    ):
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def fake_idp():
    from idp_fakes import FakeIdentityProvider  # type: ignore

    return FakeIdentityProvider()


@pytest.fixture
def services(fake_idp):
    """Fresh in-memory services bound to the fake provider, installed into
    `wiring` for the duration of the test."""
    import wiring  # type: ignore
    from idp_fakes import WEBHOOK_TEST_SECRET  # type: ignore

    bundle = wiring.build_services(idp=fake_idp, store_factory=lambda table: _memory_store(), webhook_secret=WEBHOOK_TEST_SECRET)
    bundle.frontend_url = "https://app.example.org"
    wiring.set_services(bundle)
    yield bundle
    wiring.set_services(None)


def _memory_store():
    from rolegate.stores import InMemoryKeyedStore

    return InMemoryKeyedStore()


@pytest.fixture
def bearer_as_sub(monkeypatch: pytest.MonkeyPatch):
    """Treat the bearer token value as the caller's subject.

    API tests authenticate with `Authorization: Bearer <account id>` instead of
    minting signed JWTs; token verification has its own tests.
    """
    import main  # type: ignore
    from rolegate.tokens import TokenVerificationError

    def _fake_verify(*, token: str, cfg, expected_audience=None, cache=None):
        if token == "invalid":
            raise TokenVerificationError("invalid_token")
        return {"sub": token}

    monkeypatch.setattr(main, "verify_access_token", _fake_verify)
    yield
