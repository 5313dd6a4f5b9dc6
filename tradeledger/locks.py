"""Settlement locks: per-order counters that block cancellation while a trade settles."""

from __future__ import annotations

import threading
from typing import Optional

_LOCK_KEY = "settle.lock.{}"


class CounterStore:
    """A thread-safe in-memory store of integer counters with key-value semantics."""

    def __init__(self) -> None:
        self._values: dict[str, int] = {}
        self._lock = threading.Lock()

    def incr(self, key: str) -> int:
        """Add one to a counter, starting from zero; return the new value."""
        with self._lock:
            value = self._values.get(key, 0) + 1
            self._values[key] = value
            return value

    def decr(self, key: str) -> int:
        """Subtract one from a counter, starting from zero; return the new value."""
        with self._lock:
            value = self._values.get(key, 0) - 1
            self._values[key] = value
            return value

    def get(self, key: str) -> Optional[int]:
        with self._lock:
            return self._values.get(key)

    def delete(self, key: str) -> bool:
        """Remove a counter; return whether it existed."""
        with self._lock:
            return self._values.pop(key, None) is not None

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._values


class SettleLocker:
    """Counts settlements in progress per order id."""

    def __init__(self, store: Optional[CounterStore] = None) -> None:
        self._store = store if store is not None else CounterStore()
        self._mutex = threading.Lock()

    def lock(self, *order_ids: str) -> None:
        """Mark each order as having one more settlement in progress."""
        with self._mutex:
            for order_id in order_ids:
                self._store.incr(_LOCK_KEY.format(order_id))

    def unlock(self, *order_ids: str) -> None:
        """Release one settlement per order; a counter back at zero is removed."""
        with self._mutex:
            for order_id in order_ids:
                key = _LOCK_KEY.format(order_id)
                self._store.decr(key)
                if not self._store.get(key):
                    self._store.delete(key)

    def is_locked(self, order_id: str) -> bool:
        return self._store.exists(_LOCK_KEY.format(order_id))