"""
auth/cache.py -- Bounded, namespaced, expiring in-memory maps.

Two process-local caches back the federation flow:
  - signing keys fetched from each tenant's JWKS endpoint (TTL 24h)
  - pending anti-CSRF states for the redirect round trip (TTL 10 min)

ExpiringMap wraps cachetools.TTLCache (bounded size, per-entry TTL, LRU
eviction when full) behind a threading.Lock. TTLCache itself is not
thread-safe, and FastAPI runs sync route handlers in a thread pool, so every
read and write goes through the lock. pop() is the only way to consume a
pending state, which makes single-use hold under concurrent callbacks.

Neither cache survives a restart or is shared across instances. A state
issued by instance A and redeemed on instance B fails validation; that is
an accepted limitation of the multi-instance deployment.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Hashable
from typing import Any

from cachetools import TTLCache


class ExpiringMap:
    """Thread-safe TTL map.

    Usage:
        states = ExpiringMap(maxsize=10_000, ttl=600)
        states.set("abc", value)
        value = states.pop("abc")   # None if absent or expired
    """

    def __init__(self, maxsize: int, ttl: float, timer: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._data: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)
        self._lock = threading.Lock()

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def pop(self, key: Hashable, default: Any = None) -> Any:
        """Remove and return the entry; expired entries count as absent."""
        with self._lock:
            return self._data.pop(key, default)

    def purge_expired(self) -> None:
        with self._lock:
            self._data.expire()

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
