"""
Invitations API: admin issuance and anonymous peek/accept.

Callers authenticate with `Authorization: Bearer <account id>` (see the
`bearer_as_sub` fixture); roles come from the fake identity provider.
"""
from __future__ import annotations

import pytest
import httpx
from httpx import ASGITransport

import main  # type: ignore  # noqa: E402

pytestmark = pytest.mark.anyio("asyncio")


async def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=ASGITransport(app=main.app), base_url="http://test")


def _auth(sub: str) -> dict:
    return {"Authorization": f"Bearer {sub}"}


@pytest.fixture
def setup(services, fake_idp, bearer_as_sub):
    fake_idp.add("admin-1", role="admin")
    fake_idp.add("student-1", role="student")
    return services


@pytest.mark.anyio
async def test_admin_issues_invitation_with_link(setup):
    async with (await _client()) as c:
        r = await c.post("/api/admin/invitations", json={"email": "new@x.com", "role": "educator"}, headers=_auth("admin-1"))
    assert r.status_code == 201
    assert r.headers.get("Cache-Control") == "private, no-store"
    body = r.json()
    assert body["invite_url"] == f"https://app.example.org/accept-invite/{body['token']}"
    assert body["expires_at"] - body["created_at"] == 48 * 3600


@pytest.mark.anyio
async def test_non_admin_cannot_issue(setup):
    async with (await _client()) as c:
        r = await c.post("/api/admin/invitations", json={"email": "new@x.com", "role": "student"}, headers=_auth("student-1"))
        r_anon = await c.post("/api/admin/invitations", json={"email": "new@x.com", "role": "student"})
    assert r.status_code == 403
    assert r.json() == {"error": "forbidden"}
    assert r_anon.status_code == 401


@pytest.mark.anyio
async def test_issue_rejects_unknown_role(setup):
    async with (await _client()) as c:
        r = await c.post("/api/admin/invitations", json={"email": "new@x.com", "role": "teacher"}, headers=_auth("admin-1"))
    assert r.status_code == 400
    assert r.json()["detail"] == "invalid_role"


@pytest.mark.anyio
async def test_provider_outage_on_admin_route_is_503(setup, fake_idp):
    fake_idp.down = True
    async with (await _client()) as c:
        r = await c.get("/api/admin/invitations", headers=_auth("admin-1"))
    assert r.status_code == 503
    assert r.json() == {"error": "lookup_failed"}


@pytest.mark.anyio
async def test_peek_then_accept_then_reuse(setup, fake_idp):
    inv = setup.vault.issue("new@x.com", "educator", 48)
    async with (await _client()) as c:
        peek = await c.get(f"/api/invitations/{inv.token}")
        assert peek.status_code == 200
        assert peek.json()["email"] == "new@x.com"
        assert peek.json()["role"] == "educator"

        accept = await c.post(f"/api/invitations/{inv.token}/accept", json={"password": "pw", "first_name": "Ada"})
        assert accept.status_code == 201
        account_id = accept.json()["account_id"]

        again = await c.post(f"/api/invitations/{inv.token}/accept", json={"password": "pw", "first_name": "Ada"})
        assert again.status_code == 409
        assert again.json()["error"] == "already_used"

        peek_after = await c.get(f"/api/invitations/{inv.token}")
        assert peek_after.status_code == 409
    assert fake_idp.role_of(account_id) == "educator"
    assert setup.accounts.get(account_id).name == "Ada"


@pytest.mark.anyio
async def test_unknown_and_expired_tokens(setup):
    inv = setup.vault.issue("old@x.com", "student", 1)
    setup.vault._clock = lambda: inv.expires_at + 1  # type: ignore[attr-defined]
    async with (await _client()) as c:
        missing = await c.get("/api/invitations/does-not-exist")
        expired = await c.get(f"/api/invitations/{inv.token}")
    assert missing.status_code == 404
    assert expired.status_code == 410
    assert expired.json() == {"error": "expired"}


@pytest.mark.anyio
async def test_accept_with_blank_password_spends_token(setup):
    inv = setup.vault.issue("new@x.com", "student", 48)
    async with (await _client()) as c:
        r = await c.post(f"/api/invitations/{inv.token}/accept", json={"password": "", "first_name": "Ada"})
    assert r.status_code == 400
    assert setup.vault.peek(inv.token).error == "already_used"


@pytest.mark.anyio
async def test_accept_upstream_failure_is_502(setup, fake_idp):
    inv = setup.vault.issue("new@x.com", "student", 48)
    fake_idp.down = True
    async with (await _client()) as c:
        r = await c.post(f"/api/invitations/{inv.token}/accept", json={"password": "pw", "first_name": "Ada"})
    assert r.status_code == 502
    assert r.json() == {"error": "upstream_error"}


@pytest.mark.anyio
async def test_list_and_revoke(setup):
    inv = setup.vault.issue("new@x.com", "student", 48)
    async with (await _client()) as c:
        listed = await c.get("/api/admin/invitations", headers=_auth("admin-1"))
        assert [i["token"] for i in listed.json()] == [inv.token]
        assert listed.json()[0]["expired"] is False

        revoked = await c.delete(f"/api/admin/invitations/{inv.token}", headers=_auth("admin-1"))
        assert revoked.status_code == 200

        again = await c.delete(f"/api/admin/invitations/{inv.token}", headers=_auth("admin-1"))
        assert again.status_code == 404
