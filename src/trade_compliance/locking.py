"""Per-key locks that live only while somebody holds or awaits them."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, Iterator, TypeVar


K = TypeVar("K", bound=Hashable)


@dataclass
class _Entry:
    lock: Any
    users: int = 0


class KeyedLocks(Generic[K]):
    """Serialize work per key without keeping a lock for every key ever seen.

    A caller registers interest in a key before blocking on its lock, so an
    entry is only discarded when no thread holds it and none is waiting.
    Keys that are never touched again (past period buckets, resolved
    transactions) therefore cost nothing.
    """

    def __init__(self, factory: Callable[[], Any] = threading.Lock) -> None:
        self._factory = factory
        self._entries: Dict[K, _Entry] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    @contextmanager
    def hold(self, key: K) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry(self._factory())
                self._entries[key] = entry
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[key]


__all__ = ["KeyedLocks"]
