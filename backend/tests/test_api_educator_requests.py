"""
Educator request API: submit/status for any caller, review for admins only.
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
    fake_idp.add("student-1", email="s1@example.org", role="student")
    fake_idp.add("teacher-1", role="educator")
    return services


@pytest.mark.anyio
async def test_submit_and_status(setup):
    async with (await _client()) as c:
        before = await c.get("/api/educator/request/status", headers=_auth("student-1"))
        assert before.json() == {"status": "none"}

        r = await c.post("/api/educator/request", json={"reason": "I teach chemistry"}, headers=_auth("student-1"))
        assert r.status_code == 201
        assert r.json()["status"] == "pending"

        dup = await c.post("/api/educator/request", json={}, headers=_auth("student-1"))
        assert dup.status_code == 409
        assert dup.json()["error"] == "already_pending"

        status = await c.get("/api/educator/request/status", headers=_auth("student-1"))
        assert status.json()["reason"] == "I teach chemistry"


@pytest.mark.anyio
async def test_submit_without_body_uses_default_reason(setup):
    async with (await _client()) as c:
        r = await c.post("/api/educator/request", headers=_auth("student-1"))
    assert r.status_code == 201
    assert r.json()["reason"] == "I want to become an educator"


@pytest.mark.anyio
async def test_elevated_caller_cannot_submit(setup):
    async with (await _client()) as c:
        r = await c.post("/api/educator/request", json={}, headers=_auth("teacher-1"))
    assert r.status_code == 409
    assert r.json() == {"error": "already_elevated", "detail": "educator"}


@pytest.mark.anyio
async def test_admin_approves_and_role_changes(setup, fake_idp):
    req = setup.ledger.submit("student-1").value
    async with (await _client()) as c:
        listed = await c.get("/api/educator/requests", params={"status": "pending"}, headers=_auth("admin-1"))
        assert [e["id"] for e in listed.json()] == [req.id]
        assert listed.json()[0]["user_info"]["email"] == "s1@example.org"

        r = await c.patch(f"/api/educator/requests/{req.id}/approve", headers=_auth("admin-1"))
        assert r.status_code == 200
        assert r.json()["status"] == "approved"
        assert r.json()["reviewed_by"] == "admin-1"

        again = await c.patch(f"/api/educator/requests/{req.id}/reject", json={"reason": "x"}, headers=_auth("admin-1"))
        assert again.status_code == 409
        assert again.json() == {"error": "not_pending", "detail": "approved"}
    assert fake_idp.role_of("student-1") == "educator"


@pytest.mark.anyio
async def test_reject_with_default_reason(setup, fake_idp):
    req = setup.ledger.submit("student-1").value
    async with (await _client()) as c:
        r = await c.patch(f"/api/educator/requests/{req.id}/reject", headers=_auth("admin-1"))
    assert r.status_code == 200
    assert r.json()["rejection_reason"] == "No reason provided"
    assert fake_idp.role_of("student-1") == "student"


@pytest.mark.anyio
async def test_educator_is_not_admin(setup):
    req = setup.ledger.submit("student-1").value
    async with (await _client()) as c:
        listing = await c.get("/api/educator/requests", headers=_auth("teacher-1"))
        approve = await c.patch(f"/api/educator/requests/{req.id}/approve", headers=_auth("teacher-1"))
    assert listing.status_code == 403
    assert approve.status_code == 403
    assert setup.ledger.get(req.id).status == "pending"


@pytest.mark.anyio
async def test_approve_upstream_failure_keeps_pending(setup, fake_idp):
    req = setup.ledger.submit("student-1").value
    fake_idp.fail_set_role = True
    async with (await _client()) as c:
        r = await c.patch(f"/api/educator/requests/{req.id}/approve", headers=_auth("admin-1"))
    assert r.status_code == 502
    assert setup.ledger.get(req.id).status == "pending"


@pytest.mark.anyio
async def test_unknown_request_and_bad_filter(setup):
    async with (await _client()) as c:
        missing = await c.patch("/api/educator/requests/nope/approve", headers=_auth("admin-1"))
        bad = await c.get("/api/educator/requests", params={"status": "archived"}, headers=_auth("admin-1"))
    assert missing.status_code == 404
    assert bad.status_code == 400
