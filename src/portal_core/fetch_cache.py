"""
Resilient fetch cache for expensive upstream reads.

Combines three mechanisms in front of a flaky third-party API:

- a distributed cache tier in the key-value store (authoritative),
- a bounded per-process LRU tier (best-effort latency accelerator),
- in-process coalescing of concurrent fetches for the same key.

Retries are the producer's business (see ``RetryManager``); when the
producer finally fails, ``fetch`` falls back to a longer-lived stale copy if
one exists.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .audit_logger import AuditLogger
from .config import CacheConfig
from .enums import CacheStatus, LogLevel
from .exceptions import StoreError
from .kv_store import KeyValueStore
from .local_cache import LocalCache

T = TypeVar("T")


@dataclass
class CacheLookup:
    """A value together with the tier that produced it."""

    value: Any
    status: CacheStatus


def cache_headers(s_maxage: int, swr: Optional[int] = None, public: bool = True) -> dict[str, str]:
    """
    Build CDN cache headers for a proxied response.

    Args:
        s_maxage: Shared-cache freshness in seconds
        swr: Optional stale-while-revalidate window in seconds
        public: Whether the response may be stored by shared caches
    """
    directives = ["public" if public else "private", f"s-maxage={s_maxage}"]
    if swr:
        directives.append(f"stale-while-revalidate={swr}")
    return {
        "Cache-Control": ", ".join(directives),
        "CDN-Cache-Control": f"max-age={s_maxage}",
    }


class ResilientFetchCache:
    """
    Two-tier cache with in-flight request coalescing.

    Coalescing is per process: at most one producer runs per dedup key at a
    time here, while other processes may fetch the same key concurrently.
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: CacheConfig,
        local: Optional[LocalCache] = None,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        """
        Initialize the fetch cache.

        Args:
            store: Key-value store backing the distributed tier
            config: TTL policy for both tiers
            local: Local tier; one is built from ``config`` if omitted
            logger: Optional audit logger
        """
        self._store = store
        self._config = config
        self._local = local or LocalCache(
            ttl_seconds=config.local_ttl_seconds,
            max_entries=config.local_max_entries,
        )
        self._logger = logger
        self._in_flight: dict[str, asyncio.Future] = {}

    @property
    def local(self) -> LocalCache:
        return self._local

    def in_flight(self, dedup_key: str) -> bool:
        return dedup_key in self._in_flight

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(level, "fetch_cache", message, data)

    async def read_distributed(self, key: str) -> Any:
        """Read the distributed tier; store failures count as a miss."""
        try:
            return await self._store.get(key)
        except StoreError as e:
            if self._logger:
                self._logger.log_error("fetch_cache", f"KV read failed for {key}", error=e)
            return None

    async def write_distributed(self, key: str, value: Any, ttl: int) -> None:
        """Write the distributed tier; failures are logged and swallowed."""
        try:
            await self._store.set(key, value, ex=ttl)
        except StoreError as e:
            if self._logger:
                self._logger.log_error("fetch_cache", f"KV write failed for {key}", error=e)

    async def get(self, cache_key: str, local_key: Optional[str] = None) -> Optional[CacheLookup]:
        """
        Look the key up in the distributed tier, then the local tier.

        A local hit does not repopulate the distributed tier.

        Returns:
            The hit with its tier, or None on a full miss
        """
        value = await self.read_distributed(cache_key)
        if value is not None:
            self._log(LogLevel.DEBUG, "Distributed cache hit", {"key": cache_key})
            return CacheLookup(value, CacheStatus.HIT_KV)

        value = self._local.get(local_key or cache_key)
        if value is not None:
            self._log(LogLevel.DEBUG, "Local cache hit", {"key": local_key or cache_key})
            return CacheLookup(value, CacheStatus.HIT_MEMORY)

        return None

    async def store(
        self,
        cache_key: str,
        value: Any,
        local_key: Optional[str] = None,
        fallback_key: Optional[str] = None,
    ) -> None:
        """
        Put a fresh value into both tiers.

        When ``fallback_key`` is given the value is also written there with
        the longer fallback TTL, to serve as a stale copy on later failures.
        """
        self._local.set(local_key or cache_key, value)
        await self.write_distributed(cache_key, value, self._config.kv_ttl_seconds)
        if fallback_key:
            await self.write_distributed(fallback_key, value, self._config.fallback_ttl_seconds)

    async def get_stale(self, fallback_key: str) -> Optional[CacheLookup]:
        value = await self.read_distributed(fallback_key)
        if value is None:
            return None
        return CacheLookup(value, CacheStatus.HIT_STALE)

    async def queued_fetch(self, dedup_key: str, producer: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``producer`` unless a run for ``dedup_key`` is already in flight.

        Concurrent callers with the same key await the same result (or the
        same exception). A caller being cancelled does not cancel the shared
        run.
        """
        pending = self._in_flight.get(dedup_key)
        if pending is not None:
            self._log(LogLevel.DEBUG, "Request already in flight, waiting", {"key": dedup_key})
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(producer())
        self._in_flight[dedup_key] = task
        task.add_done_callback(lambda done: self._release(dedup_key, done))
        return await asyncio.shield(task)

    def _release(self, dedup_key: str, task: asyncio.Future) -> None:
        # Every waiter may have been cancelled; consume the outcome so a
        # failed run is not reported as an unretrieved task exception.
        if not task.cancelled():
            task.exception()

        # Late callers within the linger window still share the settled result.
        def forget() -> None:
            if self._in_flight.get(dedup_key) is task:
                del self._in_flight[dedup_key]

        linger = self._config.dedup_linger_seconds
        if linger > 0:
            asyncio.get_running_loop().call_later(linger, forget)
        else:
            forget()

    async def fetch(
        self,
        cache_key: str,
        producer: Callable[[], Awaitable[Any]],
        local_key: Optional[str] = None,
        fallback_key: Optional[str] = None,
    ) -> CacheLookup:
        """
        Serve ``cache_key`` from cache, or fetch, store and return it.

        Falls back to the stale copy under ``fallback_key`` when the
        producer fails; re-raises the producer's error if there is none.
        """
        hit = await self.get(cache_key, local_key)
        if hit is not None:
            return hit

        async def produce_and_store() -> Any:
            value = await producer()
            await self.store(cache_key, value, local_key=local_key, fallback_key=fallback_key)
            return value

        try:
            value = await self.queued_fetch(local_key or cache_key, produce_and_store)
        except Exception as e:
            if self._logger:
                self._logger.log_error("fetch_cache", f"Fetch failed for {cache_key}", error=e)
            if fallback_key:
                stale = await self.get_stale(fallback_key)
                if stale is not None:
                    self._log(LogLevel.WARN, "Serving stale value", {"key": fallback_key})
                    return stale
            raise

        return CacheLookup(value, CacheStatus.MISS)
