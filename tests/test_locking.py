"""
Tests for the named lock registry
"""

import threading

import pytest

from core_savings.errors import ConcurrencyError, StateConflictError
from core_savings.locking import (
    LockRegistry, POOL_LOCK, REGISTRY_LOCK, loan_lock, member_lock, penalty_lock, _sort_key
)


class TestLockOrdering:
    """Test canonical lock order"""

    def test_sort_order(self):
        """Test pool, loans, penalties, members, registry"""
        names = [member_lock("b"), REGISTRY_LOCK, member_lock("a"), penalty_lock("p"),
                 loan_lock("l"), POOL_LOCK]
        assert sorted(names, key=_sort_key) == [
            "pool", "loan:l", "penalty:p", "member:a", "member:b", "registry"
        ]


class TestLockRegistry:
    """Test acquisition and timeouts"""

    def test_hold_is_reentrant(self):
        """Test that the same thread can nest holds on one name"""
        locks = LockRegistry(timeout=0.5)
        with locks.hold(member_lock("m1")):
            with locks.hold(member_lock("m1"), member_lock("m2")):
                pass

    def test_timeout_raises_concurrency_error(self):
        """Test that a lock held elsewhere times out"""
        locks = LockRegistry(timeout=0.1)
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold(loan_lock("L1")):
                acquired.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            assert acquired.wait(5)
            with pytest.raises(ConcurrencyError) as exc_info:
                with locks.hold(loan_lock("L1")):
                    pass
            assert isinstance(exc_info.value, StateConflictError)
            assert exc_info.value.details["lock_name"] == "loan:L1"
        finally:
            release.set()
            thread.join()

    def test_partial_acquisition_is_released(self):
        """Test that locks taken before a timeout are released"""
        locks = LockRegistry(timeout=0.1)
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold(member_lock("busy")):
                acquired.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            assert acquired.wait(5)
            with pytest.raises(ConcurrencyError):
                with locks.hold(member_lock("a-free"), member_lock("busy")):
                    pass
        finally:
            release.set()
            thread.join()

        # The free lock must be available to another thread now
        result = []

        def taker():
            with locks.hold(member_lock("a-free")):
                result.append(True)

        other = threading.Thread(target=taker)
        other.start()
        other.join()
        assert result == [True]

    def test_hold_all(self):
        """Test holding a computed collection of names"""
        locks = LockRegistry()
        with locks.hold_all([member_lock("x"), member_lock("y")]):
            pass
        with locks.hold_all([]):
            pass


class TestLockEviction:
    """Test that unused locks are dropped"""

    def test_released_locks_are_dropped(self):
        """Test the registry forgets names once released"""
        locks = LockRegistry()
        with locks.hold(loan_lock("L1"), member_lock("m1")):
            assert locks.active_names() == ["loan:L1", "member:m1"]
            with locks.hold(member_lock("m1")):
                assert locks.active_names() == ["loan:L1", "member:m1"]
            assert locks.active_names() == ["loan:L1", "member:m1"]
        assert locks.active_names() == []

    def test_many_names_do_not_accumulate(self):
        """Test a long run of distinct ids leaves nothing behind"""
        locks = LockRegistry()
        for i in range(1000):
            with locks.hold(loan_lock(f"L{i}"), penalty_lock(f"P{i}"), member_lock(f"m{i}")):
                pass
        assert locks.active_names() == []

    def test_waiter_keeps_lock_alive(self):
        """Test a lock with a waiter survives its holder's release and stays exclusive"""
        locks = LockRegistry(timeout=5)
        holding = threading.Event()
        release = threading.Event()
        order = []

        def holder():
            with locks.hold(member_lock("m1")):
                holding.set()
                release.wait(5)
                order.append("holder")

        def waiter():
            holding.wait(5)
            with locks.hold(member_lock("m1")):
                order.append("waiter")

        first = threading.Thread(target=holder)
        second = threading.Thread(target=waiter)
        first.start()
        second.start()
        assert holding.wait(5)
        release.set()
        first.join()
        second.join()

        assert order == ["holder", "waiter"]
        assert locks.active_names() == []

    def test_timeout_leaves_no_entry(self):
        """Test a timed-out waiter does not leak its entry"""
        locks = LockRegistry(timeout=0.1)
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold(loan_lock("L1")):
                acquired.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            assert acquired.wait(5)
            with pytest.raises(ConcurrencyError):
                with locks.hold(member_lock("m-free"), loan_lock("L1")):
                    pass
            assert locks.active_names() == ["loan:L1"]
        finally:
            release.set()
            thread.join()
        assert locks.active_names() == []
