"""
ID Allocator Module

Hands out unique, strictly increasing integer ids, one independent sequence
per entity class. The engine owns one allocator and seeds it from the records
it loaded, so ids survive restarts even on backends that never persisted a
counter.
"""

import threading
from typing import Dict, Iterable, Optional


class IdAllocator:
    """Per-class monotonic id sequences starting at 1"""

    def __init__(self):
        self._next: Dict[str, int] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _name(entity_class) -> str:
        return entity_class if isinstance(entity_class, str) else entity_class.__name__

    def seed(
        self,
        entity_class,
        existing_ids: Iterable[int],
        persisted_next: Optional[int] = None
    ) -> int:
        """
        Seed one sequence from the ids already in storage.

        The next id becomes ``max(existing) + 1``. A persisted counter is only
        taken into account when it is higher; it is never trusted on its own.
        Seeding never moves a sequence backwards.

        Returns:
            The next id that will be allocated for the class
        """
        name = self._name(entity_class)
        candidates = [1, max(existing_ids, default=0) + 1]
        if persisted_next is not None:
            candidates.append(int(persisted_next))

        with self._lock:
            candidates.append(self._next.get(name, 1))
            self._next[name] = max(candidates)
            return self._next[name]

    def next(self, entity_class) -> int:
        """Allocate the next id for an entity class"""
        name = self._name(entity_class)
        with self._lock:
            value = self._next.get(name, 1)
            self._next[name] = value + 1
            return value

    def peek(self, entity_class) -> int:
        """The id the next call to ``next`` would return"""
        with self._lock:
            return self._next.get(self._name(entity_class), 1)

    def snapshot(self) -> Dict[str, int]:
        """Next value of every sequence, keyed by class name"""
        with self._lock:
            return dict(self._next)
