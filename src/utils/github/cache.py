import re
import json
import time
import asyncio
import logging
import functools
from enum import Enum
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
)

from src.utils.github.errors import CacheOperationError
from src.utils.github.metrics import cache_events_total

logger = logging.getLogger("github-cache")

# Returned by get() when the caller needs to tell "absent" apart from a cached None
MISSING = object()

DEFAULT_ENTRY_SIZE = 1024


class EvictionPolicy(str, Enum):
    LRU = "lru"
    LFU = "lfu"
    FIFO = "fifo"


@dataclass
class CacheEntry:
    value: Any
    expires_at: float
    created_at: float
    last_accessed: float
    size_bytes: int
    sequence: int
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    sets: int
    deletes: int
    evictions: int
    hit_rate: float
    total_memory_bytes: int
    total_keys: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "deletes": self.deletes,
            "evictions": self.evictions,
            "hit_rate": round(self.hit_rate, 4),
            "total_memory_bytes": self.total_memory_bytes,
            "total_keys": self.total_keys,
        }


def estimate_size(value: Any) -> int:
    """Approximate the footprint of a value by the length of its JSON form."""
    try:
        return max(1, len(json.dumps(value, default=str).encode("utf-8")))
    except (TypeError, ValueError, RecursionError):
        return DEFAULT_ENTRY_SIZE


def compile_pattern(pattern: str) -> "re.Pattern[str]":
    """Translate a glob where '*' matches any substring into a regex."""
    parts = [re.escape(part) for part in pattern.split("*")]
    return re.compile(".*".join(parts), re.DOTALL)


class TTLCache:
    """
    In-process key/value cache with per-entry expiry and bounded size.

    Entries expire lazily on read and are also swept on a fixed interval.
    When inserting would exceed max_entries or max_memory_bytes, the lowest
    priority entries under the active eviction policy are removed first.
    """

    def __init__(
        self,
        max_entries: int = 10000,
        default_ttl: float = 300.0,
        eviction_policy: EvictionPolicy = EvictionPolicy.LRU,
        max_memory_bytes: int = 100 * 1024 * 1024,
        cleanup_interval: float = 60.0,
        single_flight: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self.eviction_policy = EvictionPolicy(eviction_policy)
        self.max_memory_bytes = max_memory_bytes
        self.cleanup_interval = cleanup_interval
        self.single_flight = single_flight
        self.clock = clock

        self._entries: Dict[str, CacheEntry] = {}
        self._memory_bytes = 0
        self._sequence = 0
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._deletes = 0
        self._evictions = 0
        self._inflight: Dict[str, asyncio.Future] = {}
        self._cleanup_task: Optional[asyncio.Task] = None
        self._closed = False

    @classmethod
    def from_config(cls, config, clock: Callable[[], float] = time.time) -> "TTLCache":
        return cls(
            max_entries=config.cache_max_entries,
            default_ttl=config.entity_ttl,
            eviction_policy=EvictionPolicy(config.cache_eviction_policy),
            max_memory_bytes=config.cache_max_memory_bytes,
            cleanup_interval=config.cache_cleanup_interval,
            single_flight=config.cache_single_flight,
            clock=clock,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    def keys(self) -> List[str]:
        now = self.clock()
        return [k for k, e in self._entries.items() if not e.is_expired(now)]

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        now = self.clock()

        if entry is not None and entry.is_expired(now):
            self._remove(key)
            self._deletes += 1
            entry = None

        if entry is None:
            self._misses += 1
            cache_events_total.labels(event="miss").inc()
            return default

        entry.access_count += 1
        entry.last_accessed = now
        self._hits += 1
        cache_events_total.labels(event="hit").inc()
        return entry.value

    def has(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self.clock())

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """
        Stores a value, evicting other entries first when a budget would be
        exceeded.

        Returns:
            bool: False when the value could not be cached. The failure is
            logged and never raised to the caller.
        """
        ttl = self.default_ttl if ttl is None else ttl
        try:
            size = estimate_size(value)
            if size > self.max_memory_bytes:
                raise CacheOperationError(
                    f"Value for {key} is larger than the cache memory budget",
                    context={
                        "key": key,
                        "size_bytes": size,
                        "max_memory_bytes": self.max_memory_bytes,
                    },
                )
        except CacheOperationError as e:
            logger.warning(f"Skipping cache write: {e.message}")
            return False

        if key in self._entries:
            self._remove(key)

        self._make_room(size)

        now = self.clock()
        self._sequence += 1
        self._entries[key] = CacheEntry(
            value=value,
            expires_at=now + ttl,
            created_at=now,
            last_accessed=now,
            size_bytes=size,
            sequence=self._sequence,
        )
        self._memory_bytes += size
        self._sets += 1
        cache_events_total.labels(event="set").inc()
        self._ensure_cleanup_task()
        return True

    def delete(self, key: str) -> bool:
        if key not in self._entries:
            return False
        self._remove(key)
        self._deletes += 1
        cache_events_total.labels(event="delete").inc()
        return True

    def invalidate(self, pattern: str) -> int:
        """
        Removes every key matching a glob pattern where '*' matches any
        substring. A pattern without '*' only removes that exact key.
        """
        regex = compile_pattern(pattern)
        matched = [key for key in self._entries if regex.fullmatch(key)]
        for key in matched:
            self._remove(key)
        self._deletes += len(matched)
        if matched:
            cache_events_total.labels(event="delete").inc(len(matched))
            logger.debug(f"Invalidated {len(matched)} keys matching {pattern}")
        return len(matched)

    def clear(self):
        self._entries.clear()
        self._memory_bytes = 0

    def purge_expired(self) -> int:
        now = self.clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            self._remove(key)
        self._deletes += len(expired)
        if expired:
            logger.debug(f"Swept {len(expired)} expired cache entries")
        return len(expired)

    def stats(self) -> CacheStats:
        requests = self._hits + self._misses
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            sets=self._sets,
            deletes=self._deletes,
            evictions=self._evictions,
            hit_rate=(self._hits / requests) if requests else 0.0,
            total_memory_bytes=self._memory_bytes,
            total_keys=len(self._entries),
        )

    async def get_or_set(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        """
        Read-through access: returns the cached value or awaits loader(),
        caches its result and returns it. Loader errors are never cached.
        """
        value = self.get(key, MISSING)
        if value is not MISSING:
            return value

        if not self.single_flight:
            value = await loader()
            self.set(key, value, ttl)
            return value

        pending = self._inflight.get(key)
        if pending is not None:
            # asyncio.wait leaves the shared future alone if this task is cancelled
            await asyncio.wait((pending,))
            if not pending.cancelled():
                return pending.result()
            # The loading task was cancelled, so this caller loads on its own
            return await self.get_or_set(key, loader, ttl)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            value = await loader()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unawaited failure is not reported at GC
            future.exception()
            raise
        else:
            self.set(key, value, ttl)
            future.set_result(value)
            return value
        finally:
            self._inflight.pop(key, None)

    async def warmup(
        self,
        loaders: Mapping[str, Callable[[], Awaitable[Any]]],
        ttl: Optional[float] = None,
    ) -> List[str]:
        """Loads every key that is not cached yet. Returns the keys loaded."""
        missing = [key for key in loaders if not self.has(key)]
        if not missing:
            return []
        values = await asyncio.gather(*(loaders[key]() for key in missing))
        for key, value in zip(missing, values):
            self.set(key, value, ttl)
        logger.info(f"Cache warmup loaded {len(missing)} keys")
        return missing

    async def prefetch(
        self,
        keys: Iterable[str],
        loader: Callable[[List[str]], Awaitable[Mapping[str, Any]]],
        ttl: Optional[float] = None,
    ) -> int:
        """Fetches all missing keys with a single loader call."""
        missing = [key for key in keys if not self.has(key)]
        if not missing:
            return 0
        values = await loader(missing)
        stored = 0
        for key in missing:
            if key in values:
                stored += int(self.set(key, values[key], ttl))
        return stored

    def start(self):
        """Schedule the periodic expiry sweep on the running loop."""
        if self._cleanup_task is None and self.cleanup_interval > 0:
            self._cleanup_task = asyncio.get_running_loop().create_task(
                self._cleanup_loop()
            )

    async def close(self):
        self._closed = True
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        self.clear()

    def _ensure_cleanup_task(self):
        if self._cleanup_task is not None or self._closed or self.cleanup_interval <= 0:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet, the sweep starts with the first write made inside one
            return
        self.start()

    async def _cleanup_loop(self):
        while True:
            await asyncio.sleep(self.cleanup_interval)
            self.purge_expired()

    def _remove(self, key: str):
        entry = self._entries.pop(key)
        self._memory_bytes -= entry.size_bytes

    def _priority(self, entry: CacheEntry):
        if self.eviction_policy is EvictionPolicy.LFU:
            return (entry.access_count, entry.last_accessed, entry.sequence)
        if self.eviction_policy is EvictionPolicy.FIFO:
            return (entry.sequence,)
        return (entry.last_accessed, entry.sequence)

    def _make_room(self, incoming_size: int):
        over_count = len(self._entries) + 1 > self.max_entries
        over_memory = self._memory_bytes + incoming_size > self.max_memory_bytes
        if not (over_count or over_memory):
            return

        # Expired entries go first, they are free to drop
        self.purge_expired()

        candidates = sorted(self._entries.items(), key=lambda kv: self._priority(kv[1]))
        evicted = 0
        for key, _ in candidates:
            if (
                len(self._entries) + 1 <= self.max_entries
                and self._memory_bytes + incoming_size <= self.max_memory_bytes
            ):
                break
            self._remove(key)
            evicted += 1

        if evicted:
            self._evictions += evicted
            cache_events_total.labels(event="eviction").inc(evicted)
            logger.debug(
                f"Evicted {evicted} entries ({self.eviction_policy.value}), "
                f"{len(self._entries)} keys and {self._memory_bytes} bytes remain"
            )


def cached(
    key_builder: Callable[..., str],
    ttl: Optional[float] = None,
    cache: Optional[TTLCache] = None,
):
    """
    Wraps an async callable with read-through caching.

    key_builder receives the call's arguments and returns the cache key.
    When cache is None the wrapped callable is treated as a method and the
    cache is read from self.cache at call time (key_builder then receives
    the arguments without self).
    """

    def decorator(func):
        if cache is not None:

            @functools.wraps(func)
            async def wrapper(*args, **kwargs):
                key = key_builder(*args, **kwargs)
                return await cache.get_or_set(key, lambda: func(*args, **kwargs), ttl)

            return wrapper

        @functools.wraps(func)
        async def method_wrapper(self, *args, **kwargs):
            key = key_builder(*args, **kwargs)
            return await self.cache.get_or_set(
                key, lambda: func(self, *args, **kwargs), ttl
            )

        return method_wrapper

    return decorator
