"""
Stale-while-revalidate response cache for read handlers.

`CacheManager.wrap` turns any async read handler (query params in, JSON-able
value out) into one with the same contract plus caching:

- fresh entry: served from the cache, handler not invoked;
- stale entry: served from the cache immediately while one background
  refresh per key recomputes it;
- dead or missing entry: computed synchronously and stored.

Cache keys embed the current version of every namespace the handler reads
(see `versions.InvalidationRegistry`). Any failure of the cache store makes
the wrapper fall back to calling the handler directly.
"""

import asyncio
import hashlib
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from shared.errors import CacheUnavailableError
from shared.logging import get_logger

from .versions import InvalidationRegistry

Handler = Callable[[Mapping[str, Any]], Awaitable[Any]]

RESPONSE_KEY_PREFIX = "cache:resp:"
REFRESH_LOCK_SUFFIX = ":refresh-lock"
DEFAULT_REFRESH_LOCK_TTL = 30.0
# Store expiry trails stale_until so the last stale instant is still readable
STORE_TTL_MARGIN = 5.0


@dataclass
class CacheEntry:
    """A cached response with its freshness window."""

    key: str
    value: Any
    stored_at: float
    fresh_until: float
    stale_until: float

    @classmethod
    def build(cls, key: str, value: Any, stored_at: float, fresh_ttl: float, swr_window: float) -> "CacheEntry":
        fresh_until = stored_at + fresh_ttl
        return cls(
            key=key,
            value=value,
            stored_at=stored_at,
            fresh_until=fresh_until,
            stale_until=fresh_until + swr_window,
        )

    def state(self, now: float) -> str:
        if now <= self.fresh_until:
            return "fresh"
        if now <= self.stale_until:
            return "stale"
        return "dead"

    def serialize(self) -> str:
        return json.dumps({
            "value": self.value,
            "stored_at": self.stored_at,
            "fresh_until": self.fresh_until,
            "stale_until": self.stale_until,
        })

    @classmethod
    def deserialize(cls, key: str, payload: str) -> "CacheEntry":
        data = json.loads(payload)
        return cls(
            key=key,
            value=data["value"],
            stored_at=float(data["stored_at"]),
            fresh_until=float(data["fresh_until"]),
            stale_until=float(data["stale_until"]),
        )


def normalize_query(params: Mapping[str, Any], keep_blank: Sequence[str] = ()) -> List[Tuple[str, str]]:
    """Sorted (name, value) pairs, whitespace stripped.

    Blank values are dropped unless the name is in `keep_blank`, for
    parameters whose mere presence changes the response.
    """
    pairs = ((str(name).strip(), str(value).strip()) for name, value in params.items())
    return sorted((name, value) for name, value in pairs if value or name in keep_blank)


def is_cacheable(value: Any) -> bool:
    """Error-shaped payloads are returned to the caller but never stored."""
    if value is None:
        return False
    if isinstance(value, dict):
        if "error" in value:
            return False
        if list(value.keys()) == ["message"]:
            return False
    return True


def cache_control_header(fresh_ttl: float, stale_while_revalidate: float = 0) -> str:
    """Public cache directives mirroring a wrapped endpoint's windows."""
    header = f"public, s-maxage={int(fresh_ttl)}"
    if stale_while_revalidate:
        header += f", stale-while-revalidate={int(stale_while_revalidate)}"
    return header


class CacheManager:
    """Wraps read handlers with versioned stale-while-revalidate caching."""

    def __init__(
        self,
        store,
        registry: InvalidationRegistry,
        *,
        clock: Callable[[], float] = time.time,
        metrics=None,
        refresh_lock_ttl: float = DEFAULT_REFRESH_LOCK_TTL,
    ):
        self.store = store
        self.registry = registry
        self.clock = clock
        self.metrics = metrics
        self.refresh_lock_ttl = refresh_lock_ttl
        self.logger = get_logger("orders.cache.manager")

        # Background refreshes in flight, one task per cache key
        self._refreshing: Dict[str, asyncio.Task] = {}
        # Synchronous computations in flight, shared by concurrent misses
        self._pending: Dict[str, asyncio.Task] = {}

    def build_key(
        self,
        route: str,
        params: Mapping[str, Any],
        versions: Mapping[str, int],
        keep_blank: Sequence[str] = (),
    ) -> str:
        """Hash of route, normalized query and namespace versions."""
        query = "&".join(f"{name}={value}" for name, value in normalize_query(params, keep_blank))
        version_part = ",".join(f"{ns}={versions[ns]}" for ns in sorted(versions))
        raw = f"{route}?{query}|{version_part}"
        return f"{RESPONSE_KEY_PREFIX}{hashlib.sha256(raw.encode('utf-8')).hexdigest()}"

    def wrap(
        self,
        handler: Handler,
        fresh_ttl: float,
        *,
        stale_while_revalidate: float = 0,
        route: str,
        namespaces: Sequence[str] = (),
        keep_blank: Sequence[str] = (),
    ) -> Handler:
        """Return `handler` with caching; the call contract is unchanged."""

        async def cached_handler(params: Mapping[str, Any]) -> Any:
            try:
                versions = await self.registry.get_versions(namespaces)
                key = self.build_key(route, params, versions, keep_blank)
                entry = await self._read_entry(key)
            except (CacheUnavailableError, ValueError) as exc:
                self.logger.warning("Cache unavailable, serving uncached", route=route, error=str(exc))
                self._count_lookup(route, "bypass")
                return await handler(params)

            if entry is not None:
                state = entry.state(self.clock())
                if state == "fresh":
                    self.logger.debug("Cache hit", route=route, key=key)
                    self._count_lookup(route, "fresh")
                    return entry.value
                if state == "stale":
                    self.logger.debug("Cache hit (stale)", route=route, key=key)
                    self._count_lookup(route, "stale")
                    self._schedule_refresh(key, route, handler, params, fresh_ttl, stale_while_revalidate)
                    return entry.value

            self.logger.debug("Cache miss", route=route, key=key)
            self._count_lookup(route, "miss")
            return await self._compute(key, route, handler, params, fresh_ttl, stale_while_revalidate)

        cached_handler.__name__ = getattr(handler, "__name__", "cached_handler")
        cached_handler.__wrapped__ = handler
        return cached_handler

    async def _read_entry(self, key: str) -> Optional[CacheEntry]:
        payload = await self.store.get(key)
        if payload is None:
            return None
        try:
            return CacheEntry.deserialize(key, payload)
        except (ValueError, KeyError, TypeError) as exc:
            self.logger.warning("Discarding unreadable cache entry", key=key, error=str(exc))
            return None

    async def _compute(
        self,
        key: str,
        route: str,
        handler: Handler,
        params: Mapping[str, Any],
        fresh_ttl: float,
        swr_window: float,
    ) -> Any:
        """Run the handler once for all concurrent misses of `key`."""
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(
                self._compute_and_store(key, route, handler, params, fresh_ttl, swr_window)
            )
            self._pending[key] = task
            task.add_done_callback(lambda done: self._forget(self._pending, key, done))
        else:
            self.logger.debug("Coalescing with in-flight computation", route=route, key=key)
        return await asyncio.shield(task)

    async def _compute_and_store(
        self,
        key: str,
        route: str,
        handler: Handler,
        params: Mapping[str, Any],
        fresh_ttl: float,
        swr_window: float,
    ) -> Any:
        value = await handler(params)
        await self._store(key, route, value, fresh_ttl, swr_window)
        return value

    async def _store(self, key: str, route: str, value: Any, fresh_ttl: float, swr_window: float) -> None:
        if not is_cacheable(value):
            self.logger.debug("Response not cached due to validation failure", route=route, key=key)
            return

        entry = CacheEntry.build(key, value, self.clock(), fresh_ttl, swr_window)
        try:
            payload = entry.serialize()
        except (TypeError, ValueError) as exc:
            self.logger.warning("Response is not serializable, not cached", route=route, error=str(exc))
            return

        try:
            await self.store.set(key, payload, fresh_ttl + swr_window + STORE_TTL_MARGIN)
            self.logger.debug("Response cached", route=route, key=key, fresh_ttl=fresh_ttl, swr=swr_window)
        except CacheUnavailableError as exc:
            self.logger.warning("Failed to cache response", route=route, key=key, error=str(exc))

    def _schedule_refresh(
        self,
        key: str,
        route: str,
        handler: Handler,
        params: Mapping[str, Any],
        fresh_ttl: float,
        swr_window: float,
    ) -> None:
        """Start a background refresh unless one is already running for `key`."""
        # No await between the membership test and the insert
        if key in self._refreshing:
            self.logger.debug("Refresh already in flight", route=route, key=key)
            return

        task = asyncio.ensure_future(self._refresh(key, route, handler, dict(params), fresh_ttl, swr_window))
        self._refreshing[key] = task
        task.add_done_callback(lambda done: self._forget(self._refreshing, key, done))

    async def _refresh(
        self,
        key: str,
        route: str,
        handler: Handler,
        params: Mapping[str, Any],
        fresh_ttl: float,
        swr_window: float,
    ) -> None:
        lock_key = f"{key}{REFRESH_LOCK_SUFFIX}"
        try:
            acquired = await self.store.set_if_absent(lock_key, "1", self.refresh_lock_ttl)
        except CacheUnavailableError as exc:
            self.logger.warning("Skipping refresh, cache unavailable", route=route, error=str(exc))
            self._count_refresh(route, "skipped")
            return

        if not acquired:
            self.logger.debug("Refresh held by another instance", route=route, key=key)
            self._count_refresh(route, "skipped")
            return

        try:
            value = await handler(params)
            await self._store(key, route, value, fresh_ttl, swr_window)
            self.logger.info("Background refresh completed", route=route, key=key)
            self._count_refresh(route, "success")
        except Exception as exc:
            # The stale entry stays in place until it dies
            self.logger.error("Background refresh failed", route=route, key=key, error=str(exc))
            self._count_refresh(route, "error")
        finally:
            try:
                await self.store.delete(lock_key)
            except CacheUnavailableError as exc:
                self.logger.warning("Failed to release refresh lock", key=lock_key, error=str(exc))

    @staticmethod
    def _forget(registry: Dict[str, asyncio.Task], key: str, task: asyncio.Task) -> None:
        if registry.get(key) is task:
            del registry[key]
        if not task.cancelled():
            # Awaiting callers receive the exception; mark it retrieved for the loop
            task.exception()

    async def wait_for_refreshes(self) -> None:
        """Wait until every background refresh started so far has finished."""
        while self._refreshing:
            await asyncio.gather(*list(self._refreshing.values()), return_exceptions=True)

    def refreshes_in_flight(self) -> int:
        return len(self._refreshing)

    async def clear_all(self) -> bool:
        """Flush the cache store; namespace versions return to 0."""
        try:
            await self.store.flush()
        except CacheUnavailableError as exc:
            self.logger.error("Failed to clear cache", error=str(exc))
            return False
        self.logger.info("All caches cleared")
        return True

    def _count_lookup(self, route: str, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("cache_lookups_total", route=route, result=result)

    def _count_refresh(self, route: str, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("cache_refresh_total", route=route, outcome=outcome)
