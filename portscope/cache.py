"""TTL cache, single-flight guard and per-adapter state."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Coroutine, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Miss:
    """Sentinel returned by TTLCache.get when nothing usable is stored."""

    _instance: "_Miss | None" = None

    def __new__(cls) -> "_Miss":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS: Any = _Miss()


@dataclass
class CacheEntry:
    """A stored value. ``expires_at`` of None means it never expires."""

    key: str
    value: Any
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class TTLCache:
    """In-memory key/value cache with lazy expiry.

    Expiry is only checked on read; there is no background sweep. A ttl of 0
    means "do not store" (and drops whatever was stored under the key), a ttl
    of None means the entry never expires.

    The cache does not coordinate concurrent misses: two callers missing the
    same key both run their producer. Wrap the producer in a SingleFlight
    when that matters.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._store: dict[str, CacheEntry] = {}

    def get(self, key: str) -> Any:
        """Return the cached value, or MISS if absent or expired."""
        entry = self._store.get(key)
        if entry is None:
            return MISS
        if entry.is_expired(self._clock()):
            del self._store[key]
            return MISS
        return entry.value

    def set(self, key: str, value: Any, ttl: float | None) -> None:
        """Store a value for ``ttl`` seconds."""
        if ttl is not None and ttl < 0:
            raise ValueError(f"ttl must be >= 0 or None, got {ttl}")
        if ttl == 0:
            self._store.pop(key, None)
            return
        expires_at = None if ttl is None else self._clock() + ttl
        self._store[key] = CacheEntry(key=key, value=value, expires_at=expires_at)

    def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not MISS

    def snapshot(self) -> dict[str, str]:
        """Describe live entries (for debug logging)."""
        now = self._clock()
        described = {}
        for key, entry in list(self._store.items()):
            if entry.is_expired(now):
                continue
            if isinstance(entry.value, (list, tuple, set)):
                value_desc = f"{type(entry.value).__name__}(len={len(entry.value)})"
            elif isinstance(entry.value, dict):
                value_desc = f"dict({len(entry.value)} keys)"
            else:
                value_desc = type(entry.value).__name__
            remaining = "no-expiry" if entry.expires_at is None else f"{entry.expires_at - now:.1f}s ttl-left"
            described[key] = f"{value_desc} ({remaining})"
        return described


class SingleFlight:
    """Collapse concurrent calls for the same key into one in-flight task.

    Usage:
        flights = SingleFlight()
        result = await flights.run("collect_all", lambda: do_collect())
    """

    def __init__(self) -> None:
        self._inflight: dict[str, asyncio.Task] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    async def run(self, key: str, factory: Callable[[], Coroutine[Any, Any, T]]) -> T:
        """Run ``factory()`` unless a call for ``key`` is already running, then share it."""
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._forget(k, _t))
        else:
            logger.debug(f"Joining in-flight call for {key}")
        # shield so one caller being cancelled does not cancel the others
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]


@dataclass
class AdapterState:
    """Mutable state owned by one adapter instance.

    Composed adapters receive their parent's state so that cache keys,
    in-flight work and degraded facets are shared. Degraded reasons recorded
    while a cached value was produced are re-applied whenever it is served
    from cache.
    """

    cache: TTLCache = field(default_factory=TTLCache)
    flights: SingleFlight = field(default_factory=SingleFlight)
    degraded: dict[str, str] = field(default_factory=dict)
    cache_disabled: bool = False
    cached_degraded: dict[str, dict[str, str]] = field(default_factory=dict)

    async def cached(
        self,
        namespace: str,
        operation: str,
        producer: Callable[[], Awaitable[T]],
        ttl: float | None,
        force_refresh: bool = False,
    ) -> T:
        """Return ``namespace:operation`` from cache, producing it on a miss."""
        key = f"{namespace}:{operation}"
        if self.cache_disabled:
            logger.debug(f"Cache disabled; bypassing for {key}")
            return await producer()

        if not force_refresh:
            value = self.cache.get(key)
            if value is not MISS:
                logger.debug(f"Cache hit: {key}")
                self.degraded.update(self.cached_degraded.get(key, {}))
                return value
            logger.debug(f"Cache miss: {key}")
        else:
            logger.debug(f"Force refresh: {key}")

        before = dict(self.degraded)
        fresh = await producer()
        self.cache.set(key, fresh, ttl)
        marked = {facet: reason for facet, reason in self.degraded.items() if before.get(facet) != reason}
        if marked and key in self.cache:
            self.cached_degraded[key] = marked
        else:
            self.cached_degraded.pop(key, None)
        return fresh

    def invalidate(self, namespace: str, operation: str) -> None:
        key = f"{namespace}:{operation}"
        self.cache.delete(key)
        self.cached_degraded.pop(key, None)
