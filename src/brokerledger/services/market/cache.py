"""TTL cache for market quotes."""

import logging
import threading
import time
from decimal import Decimal
from typing import Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")


class TTLCache(Generic[V]):
    """
    Thread-safe cache whose entries expire after ttl_seconds.

    Usage:
        cache = TTLCache(ttl_seconds=60)
        price = cache.get_or_refresh(("TQBR", "AFLT"), lambda: client.get_quote("TQBR", "AFLT"))

    A loader returning None is not cached, so a failed lookup is retried
    on the next call.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, V]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def put(self, key: Hashable, value: V) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, value)

    def get_or_refresh(self, key: Hashable, loader: Callable[[], Optional[V]]) -> Optional[V]:
        value = self.get(key)
        if value is not None:
            return value
        value = loader()
        if value is not None:
            self.put(key, value)
        return value

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class CachedQuoteProvider:
    """QuoteProvider that serves repeated lookups from a TTLCache."""

    def __init__(self, provider, cache: TTLCache[Decimal]):
        self.provider = provider
        self.cache = cache

    def get_quote(self, market: str, ticker: str) -> Optional[Decimal]:
        return self.cache.get_or_refresh(
            (market, ticker),
            lambda: self.provider.get_quote(market, ticker),
        )
