"""
Keyed document stores with atomic check-and-set.

Why: Token and request state must be swappable between a process-local map
(single node, tests) and a shared durable store (multi-node) without touching
component logic. Components depend only on the `KeyedStore` protocol.

Documents are plain JSON-compatible dicts so the same records can be stored
in memory or in a `jsonb` column.
"""
from __future__ import annotations

import copy
import threading
from typing import Dict, List, Optional, Protocol


class KeyedStore(Protocol):
    def get(self, key: str) -> Optional[dict]:
        ...

    def put(self, key: str, doc: dict) -> None:
        ...

    def insert_if_absent(self, key: str, doc: dict) -> bool:
        """Store `doc` only when `key` is free. Returns True when inserted."""
        ...

    def compare_and_swap(self, key: str, expected: dict, new: dict) -> bool:
        """Replace the document only if it still equals `expected`."""
        ...

    def delete(self, key: str) -> bool:
        ...

    def values(self) -> List[dict]:
        ...


class InMemoryKeyedStore:
    """Process-local store. One lock guards the map; critical sections are
    plain dict operations so contention stays negligible."""

    def __init__(self) -> None:
        self._data: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[dict]:
        with self._lock:
            doc = self._data.get(key)
            return copy.deepcopy(doc) if doc is not None else None

    def put(self, key: str, doc: dict) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(doc)

    def insert_if_absent(self, key: str, doc: dict) -> bool:
        with self._lock:
            if key in self._data:
                return False
            self._data[key] = copy.deepcopy(doc)
            return True

    def compare_and_swap(self, key: str, expected: dict, new: dict) -> bool:
        with self._lock:
            if self._data.get(key) != expected:
                return False
            self._data[key] = copy.deepcopy(new)
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def values(self) -> List[dict]:
        with self._lock:
            return [copy.deepcopy(v) for v in self._data.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
