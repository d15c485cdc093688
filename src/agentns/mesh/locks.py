"""Fine-grained locks: one per registry key, one claim per binding triple."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator


class KeyedLock:
    """Hands out a mutex per key so unrelated keys never contend.

    Entries are reference counted and dropped once nobody holds or waits
    on them, so the table does not grow with every id ever seen.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, list] = {}   # key -> [lock, refcount]

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        lock = entry[0]
        try:
            with lock:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class ClaimSet:
    """Non-blocking, acquire-or-fail claims on hashable keys."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._claimed: set[Hashable] = set()

    def try_claim(self, key: Hashable) -> bool:
        with self._guard:
            if key in self._claimed:
                return False
            self._claimed.add(key)
            return True

    def release(self, key: Hashable) -> None:
        with self._guard:
            self._claimed.discard(key)

    def is_claimed(self, key: Hashable) -> bool:
        with self._guard:
            return key in self._claimed
