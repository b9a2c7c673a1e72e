"""
Token vault: single use, lazy expiry, revocation and concurrent redemption.
"""
from __future__ import annotations

import threading

import pytest

from rolegate.invitations import TokenVault


class _Clock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_issue_peek_consume_then_already_used():
    vault = TokenVault()
    inv = vault.issue("a@x.com", "educator", 48)
    assert len(inv.token) == 64

    peeked = vault.peek(inv.token)
    assert peeked.ok
    assert (peeked.value.email, peeked.value.role) == ("a@x.com", "educator")

    consumed = vault.consume(inv.token)
    assert consumed.ok and consumed.value.used is True

    assert vault.peek(inv.token).error == "already_used"
    assert vault.consume(inv.token).error == "already_used"


def test_peek_does_not_mutate():
    vault = TokenVault()
    inv = vault.issue("a@x.com", "student", 1)
    for _ in range(3):
        assert vault.peek(inv.token).ok
    assert vault.consume(inv.token).ok


def test_unknown_and_empty_tokens_are_not_found():
    vault = TokenVault()
    assert vault.peek("nope").error == "not_found"
    assert vault.consume("").error == "not_found"
    assert vault.revoke("nope").error == "not_found"


def test_expiry_is_lazy_and_token_stays_inert():
    clock = _Clock()
    vault = TokenVault(clock=clock)
    inv = vault.issue("a@x.com", "student", 1)

    clock.now += 3600  # exactly at expires_at: still valid
    assert vault.peek(inv.token).ok

    clock.now += 1
    assert vault.peek(inv.token).error == "expired"
    assert vault.consume(inv.token).error == "expired"
    # Expired tokens are not deleted by reads
    assert vault.peek(inv.token).error == "expired"
    listed = vault.list()
    assert len(listed) == 1 and listed[0].expired is True


def test_fractional_clock_does_not_expire_token_early():
    clock = _Clock(1_700_000_000.9)
    vault = TokenVault(clock=clock)
    inv = vault.issue("a@x.com", "student", 1)

    clock.now = 1_700_000_000.9 + 3599.6  # just under a full hour after issue
    assert vault.peek(inv.token).ok
    assert vault.consume(inv.token).ok


def test_used_wins_over_expired():
    clock = _Clock()
    vault = TokenVault(clock=clock)
    inv = vault.issue("a@x.com", "student", 1)
    assert vault.consume(inv.token).ok
    clock.now += 7200
    assert vault.peek(inv.token).error == "already_used"


def test_revoke_removes_regardless_of_state():
    vault = TokenVault()
    live = vault.issue("a@x.com", "student", 1)
    used = vault.issue("b@x.com", "student", 1)
    assert vault.consume(used.token).ok

    assert vault.revoke(live.token).ok
    assert vault.revoke(used.token).ok
    assert vault.peek(live.token).error == "not_found"
    assert vault.consume(used.token).error == "not_found"
    assert vault.list() == []


def test_multiple_invitations_per_email_are_independent():
    vault = TokenVault()
    first = vault.issue("a@x.com", "student", 1)
    second = vault.issue("a@x.com", "educator", 1)
    assert first.token != second.token
    assert vault.consume(first.token).ok
    assert vault.consume(second.token).ok


def test_list_newest_first_with_derived_flag():
    clock = _Clock()
    vault = TokenVault(clock=clock)
    old = vault.issue("old@x.com", "student", 1)
    clock.now += 10
    new = vault.issue("new@x.com", "admin", 48)
    clock.now += 3600

    views = vault.list()
    assert [v.invitation.token for v in views] == [new.token, old.token]
    assert [v.expired for v in views] == [False, True]


@pytest.mark.parametrize("role,ttl", [("teacher", 1), ("", 1), ("student", 0), ("student", -5)])
def test_issue_rejects_invalid_input(role, ttl):
    with pytest.raises(ValueError):
        TokenVault().issue("a@x.com", role, ttl)


def test_concurrent_consume_has_exactly_one_winner():
    vault = TokenVault()
    inv = vault.issue("race@x.com", "student", 1)
    barrier = threading.Barrier(16)
    results = []
    lock = threading.Lock()

    def _worker():
        barrier.wait()
        r = vault.consume(inv.token)
        with lock:
            results.append(r)

    threads = [threading.Thread(target=_worker) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for r in results if r.ok) == 1
    assert {r.error for r in results if not r.ok} == {"already_used"}
