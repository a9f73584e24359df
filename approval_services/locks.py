"""
approval_services.locks -- Per-key execution locks.

Responsibility:
    Serialise mutations of one instance (or one pipeline) inside a process
    while letting different instances run concurrently.  One
    ``threading.Lock`` per key is created on demand and dropped when its
    last holder leaves, so the registry does not grow with the number of
    instances ever touched.

Architecture position:
    Services -- in-process concurrency primitive.  Across processes the
    row lock (SELECT ... FOR UPDATE) and the optimistic ``lock_version``
    column give the same single-writer guarantee.

Invariants enforced:
    - At most one holder per key at a time.
    - A key's lock is removed only when no thread holds or waits on it.
"""

from __future__ import annotations

import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.refs = 0


class KeyedLockRegistry:
    """Reference-counted lock per key."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.refs += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.refs -= 1
                if entry.refs == 0:
                    del self._entries[key]

    def is_held(self, key: Hashable) -> bool:
        with self._guard:
            entry = self._entries.get(key)
            return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
