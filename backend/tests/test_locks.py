from __future__ import annotations

from sqlalchemy.exc import OperationalError

from lesson_engine.locks import GenerationLockManager
from lesson_engine.store import DeliveryStore

USER = "learner-1"
SUBJECT = "Algebra 1"


def test_second_acquire_is_busy_until_release(database) -> None:
    locks = GenerationLockManager(DeliveryStore())

    first = locks.acquire(USER, SUBJECT)
    second = locks.acquire(USER, SUBJECT)
    assert (first.acquired, first.mode) == (True, "held")
    assert (second.acquired, second.mode) == (False, "busy")

    locks.release(USER, SUBJECT, second)
    assert not locks.acquire(USER, SUBJECT).acquired

    locks.release(USER, SUBJECT, first)
    third = locks.acquire(USER, SUBJECT)
    assert (third.acquired, third.mode) == (True, "held")


def test_locks_are_independent_per_subject(database) -> None:
    locks = GenerationLockManager(DeliveryStore())
    assert locks.acquire(USER, SUBJECT).acquired
    assert locks.acquire(USER, "Geometry").acquired
    assert locks.acquire("learner-2", SUBJECT).acquired


def test_expired_lease_is_taken_over(database) -> None:
    store = DeliveryStore()
    GenerationLockManager(store, ttl_seconds=-1).acquire(USER, SUBJECT)
    outcome = GenerationLockManager(store).acquire(USER, SUBJECT)
    assert outcome.acquired


def test_hold_releases_on_exit(database) -> None:
    locks = GenerationLockManager(DeliveryStore())
    with locks.hold(USER, SUBJECT) as outcome:
        assert outcome.acquired
        with locks.hold(USER, SUBJECT) as nested:
            assert nested.mode == "busy"
    assert locks.acquire(USER, SUBJECT).acquired


class _NoLockTable:
    def acquire_lock(self, *args, **kwargs):
        raise OperationalError("INSERT INTO generation_locks", {}, Exception("no such table"))

    def release_lock(self, *args, **kwargs):
        raise AssertionError("local locks never touch the store")


def test_falls_back_to_in_process_lock() -> None:
    locks = GenerationLockManager(_NoLockTable())  # type: ignore[arg-type]

    first = locks.acquire(USER, SUBJECT)
    assert (first.acquired, first.mode) == (True, "unsupported")
    busy = locks.acquire(USER, " algebra   1 ")
    assert (busy.acquired, busy.mode) == (False, "busy")

    locks.release(USER, SUBJECT, first)
    assert locks.acquire(USER, SUBJECT).acquired
