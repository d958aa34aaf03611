from datetime import datetime, timedelta, timezone

import pytest

from jobledger.services.errors import LockedError
from jobledger.services.locking import INVOICE, LockManager


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def locks(db, clock):
    return LockManager(db, ttl_seconds=60, clock=clock)


def test_second_holder_is_refused(locks):
    lock = locks.acquire(INVOICE, "INV-1", "alice")
    assert lock["locked_by"] == "alice"

    with pytest.raises(LockedError) as exc_info:
        locks.acquire(INVOICE, "INV-1", "bob")
    assert exc_info.value.locked_by == "alice"
    assert exc_info.value.context["entity_id"] == "INV-1"


def test_reacquire_by_holder_extends_expiry(locks, clock):
    first = locks.acquire(INVOICE, "INV-1", "alice")
    clock.advance(30)
    second = locks.acquire(INVOICE, "INV-1", "alice")

    assert second["id"] == first["id"]
    assert second["expires_at"] > first["expires_at"]


def test_expired_lock_is_taken_over(locks, clock):
    locks.acquire(INVOICE, "INV-1", "alice")
    clock.advance(61)

    assert locks.check(INVOICE, "INV-1") is None
    lock = locks.acquire(INVOICE, "INV-1", "bob")
    assert lock["locked_by"] == "bob"


def test_release_by_holder_only(locks):
    locks.acquire(INVOICE, "INV-1", "alice")

    with pytest.raises(LockedError):
        locks.release(INVOICE, "INV-1", "bob")
    assert locks.release(INVOICE, "INV-1", "alice") is True
    assert locks.release(INVOICE, "INV-1", "alice") is False
    assert locks.acquire(INVOICE, "INV-1", "bob")["locked_by"] == "bob"


def test_force_release(locks):
    locks.acquire(INVOICE, "INV-1", "alice")
    assert locks.force_release(INVOICE, "INV-1", "admin") is True
    assert locks.check(INVOICE, "INV-1") is None


def test_locks_are_per_entity(locks):
    locks.acquire(INVOICE, "INV-1", "alice")
    locks.acquire(INVOICE, "INV-2", "bob")
    locks.acquire("draw", "INV-1", "carol")
    assert {l["locked_by"] for l in locks.list_locks()} == {"alice", "bob", "carol"}


def test_require_lock(locks):
    locks.require_lock(INVOICE, "INV-1", "anyone")
    locks.acquire(INVOICE, "INV-1", "alice")
    locks.require_lock(INVOICE, "INV-1", "alice")
    with pytest.raises(LockedError):
        locks.require_lock(INVOICE, "INV-1", "bob")
