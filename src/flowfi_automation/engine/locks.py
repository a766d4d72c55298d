"""Per-id locks that only exist while someone is using them.

Workflows, subscriptions and proposals each get their own lock so different
ids never contend. An entry is created on first use and dropped as soon as the
last holder or waiter leaves, so the table tracks in-flight ids only.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field


@dataclass
class _Entry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class KeyedLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def locked(self, key: str) -> bool:
        with self._guard:
            entry = self._entries.get(key)
            return entry is not None and entry.lock.locked()

    @contextmanager
    def hold(self, key: str, *, blocking: bool = True) -> Iterator[bool]:
        """Hold the lock for `key`; yields whether it was acquired.

        With ``blocking=False`` the caller must check the yielded flag.
        """

        with self._guard:
            entry = self._entries.setdefault(key, _Entry())
            entry.users += 1
        acquired = entry.lock.acquire(blocking=blocking)
        try:
            yield acquired
        finally:
            if acquired:
                entry.lock.release()
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[key]
