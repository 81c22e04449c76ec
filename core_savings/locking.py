"""
Named Lock Registry

Serializes state transitions on the same loan, member or penalty while letting
operations on unrelated records run in parallel.

Locks are always taken in one global order (pool, loans, penalties, members,
then the registration lock; ids sorted within a group) so two operations can
never wait on each other. Domain locks must be held before a storage transaction is opened.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterable, List, Tuple

from .errors import ConcurrencyError


POOL_LOCK = "pool"
REGISTRY_LOCK = "registry"

_ORDER = {"pool": 0, "loan": 1, "penalty": 2, "member": 3, "registry": 4}


def loan_lock(loan_id: str) -> str:
    return f"loan:{loan_id}"


def member_lock(member_id: str) -> str:
    return f"member:{member_id}"


def penalty_lock(penalty_id: str) -> str:
    return f"penalty:{penalty_id}"


def _sort_key(name: str):
    kind = name.split(":", 1)[0]
    return (_ORDER.get(kind, len(_ORDER)), name)


class _NamedLock:
    """A lock plus the number of threads holding or waiting on it"""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


class LockRegistry:
    """
    Hands out one re-entrant lock per name

    A name's lock is dropped once no thread holds or waits on it, so the
    registry only keeps locks that are in use.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._locks: Dict[str, _NamedLock] = {}
        self._guard = threading.Lock()

    def _checkout(self, name: str) -> _NamedLock:
        with self._guard:
            entry = self._locks.get(name)
            if entry is None:
                entry = _NamedLock()
                self._locks[name] = entry
            entry.users += 1
            return entry

    def _checkin(self, name: str, entry: _NamedLock) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[name]

    def active_names(self) -> List[str]:
        """Names currently held or waited on"""
        with self._guard:
            return sorted(self._locks, key=_sort_key)

    @contextmanager
    def hold(self, *names: str):
        """
        Acquire every named lock in canonical order

        Raises:
            ConcurrencyError: If a lock is not acquired within the timeout.
                Locks already taken are released before raising.
        """
        ordered = sorted(set(names), key=_sort_key)
        acquired: List[Tuple[str, _NamedLock]] = []
        try:
            for name in ordered:
                entry = self._checkout(name)
                if not entry.lock.acquire(timeout=self.timeout):
                    self._checkin(name, entry)
                    raise ConcurrencyError(
                        f"Timed out waiting for {name}; retry the operation",
                        lock_name=name
                    )
                acquired.append((name, entry))
            yield
        finally:
            for name, entry in reversed(acquired):
                entry.lock.release()
                self._checkin(name, entry)

    def hold_all(self, names: Iterable[str]):
        """Same as hold() for a computed collection of names"""
        return self.hold(*list(names))
