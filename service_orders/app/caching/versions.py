"""
Per-namespace invalidation versions.

Writes never enumerate or delete cached responses. They bump the version of
the namespace they touched; every cache key embeds the versions current at
read time, so responses cached before a bump can no longer be addressed and
simply age out of the store by TTL.
"""

from typing import Dict, Optional, Sequence

from shared.logging import get_logger

VERSION_KEY_PREFIX = "cache:v:"

ITEMS = "items"
ORDERS = "orders"
FEEDBACKS = "feedbacks"


class InvalidationRegistry:
    """Monotonic version counters kept in the shared cache store."""

    def __init__(self, store, metrics=None):
        self.store = store
        self.metrics = metrics
        self.logger = get_logger("orders.cache.versions")

    @staticmethod
    def version_key(namespace: str) -> str:
        return f"{VERSION_KEY_PREFIX}{namespace}"

    async def bump(self, namespace: str) -> int:
        """Atomically increment and return the namespace version."""
        version = await self.store.incr(self.version_key(namespace))
        self.logger.info("Cache version bumped", namespace=namespace, version=version)
        if self.metrics:
            self.metrics.increment_counter("cache_version_bumps_total", namespace=namespace)
        return version

    async def get_version(self, namespace: str) -> int:
        """Current version of a namespace; 0 until its first bump."""
        raw = await self.store.get(self.version_key(namespace))
        return _parse_version(raw)

    async def get_versions(self, namespaces: Sequence[str]) -> Dict[str, int]:
        """Read several namespace versions in one round trip."""
        names = sorted(set(namespaces))
        if not names:
            return {}
        raw_values = await self.store.mget([self.version_key(name) for name in names])
        return {name: _parse_version(raw) for name, raw in zip(names, raw_values)}


def _parse_version(raw: Optional[str]) -> int:
    if raw is None:
        return 0
    return int(raw)
