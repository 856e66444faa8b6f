"""Short-lived key/value cache shared by the DNS, geolocation and DNSBL lookups."""

import time
from typing import Any, Callable, Dict, Optional, Tuple


class TtlCache:
    """
    In-memory cache with a per-entry expiry.

    Expired entries are dropped lazily when read; there is no size bound and no
    background sweep. Absence and expiry look the same to callers: ``get``
    returns ``None``. Concurrent writers for one key overwrite each other.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at < self._clock():
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        """Store ``value`` for ``ttl`` seconds."""
        self._entries[key] = (self._clock() + ttl, value)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# one instance per process, injected into the resolvers by default
default_cache = TtlCache()
