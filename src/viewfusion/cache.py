"""
Bounded, thread-safe cell cache.

Entries are evicted by an ordering policy once the capacity (in entries) is
exceeded. Loading a missing key is serialized per key, so a value is computed
at most once even when several threads ask for it concurrently.
"""

import threading
from collections import OrderedDict
from typing import Callable, Dict, Generic, Hashable, Optional, TypeVar

V = TypeVar("V")


class LRUPolicy:
    """Evict the least recently used entry; hits refresh recency."""

    name = "lru"

    def touch(self, entries: OrderedDict, key) -> None:
        entries.move_to_end(key)


class FIFOPolicy:
    """Evict the oldest inserted entry; hits do not change the order."""

    name = "fifo"

    def touch(self, entries: OrderedDict, key) -> None:
        pass


_POLICIES = {"lru": LRUPolicy, "fifo": FIFOPolicy}


def make_policy(policy) -> object:
    """Resolve a policy instance from a name, a class or an instance."""
    if isinstance(policy, str):
        try:
            return _POLICIES[policy.lower()]()
        except KeyError:
            raise ValueError(f"Unknown cache policy {policy!r}; use 'lru' or 'fifo'.") from None
    if isinstance(policy, type):
        return policy()
    return policy


class BoundedCache(Generic[V]):
    """
    Mapping of keys to computed values with a maximum number of entries.

    Parameters
    ----------
    capacity : int
        Maximum number of entries kept.
    policy : {'lru', 'fifo'} or policy object
        Eviction order.
    """

    def __init__(self, capacity: int, policy="lru"):
        if int(capacity) < 1:
            raise ValueError("capacity must be >= 1.")
        self.capacity = int(capacity)
        self.policy = make_policy(policy)
        self._entries: "OrderedDict[Hashable, V]" = OrderedDict()
        self._lock = threading.Lock()
        self._key_locks: Dict[Hashable, threading.Lock] = {}
        self.hits = 0
        self.misses = 0
        self.loads = 0
        self.evictions = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key) -> bool:
        with self._lock:
            return key in self._entries

    def get(self, key) -> Optional[V]:
        """Cached value for ``key`` or None, counting a hit or a miss."""
        with self._lock:
            return self._lookup(key)

    def _lookup(self, key) -> Optional[V]:
        value = self._entries.get(key)
        if value is None:
            self.misses += 1
            return None
        self.hits += 1
        self.policy.touch(self._entries, key)
        return value

    def put(self, key, value: V) -> None:
        with self._lock:
            self._insert(key, value)

    def _insert(self, key, value: V) -> None:
        self._entries[key] = value
        self._entries.move_to_end(key)
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)
            self.evictions += 1

    def get_or_compute(self, key, loader: Callable[[], V]) -> V:
        """
        Return the cached value for ``key``, computing it with ``loader`` on a miss.

        Concurrent callers for the same missing key wait for the first one, so
        ``loader`` runs once per residency of the key. Exceptions from
        ``loader`` propagate and nothing is cached.
        """
        with self._lock:
            value = self._lookup(key)
            if value is not None:
                return value
            key_lock = self._key_locks.setdefault(key, threading.Lock())

        with key_lock:
            with self._lock:
                value = self._entries.get(key)
                if value is not None:
                    self.policy.touch(self._entries, key)
                    return value
            try:
                value = loader()
                with self._lock:
                    self.loads += 1
                    self._insert(key, value)
                return value
            finally:
                with self._lock:
                    if self._key_locks.get(key) is key_lock:
                        del self._key_locks[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "size": len(self._entries),
                "capacity": self.capacity,
                "hits": self.hits,
                "misses": self.misses,
                "loads": self.loads,
                "evictions": self.evictions,
            }
