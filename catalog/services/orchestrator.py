"""
FetchOrchestrator - Fetch-with-fallback pipeline over Cache and ResilientClient.

Order for a resource key:
1. Fresh cache (with an age-based background refresh)
2. Network (transform, then write to cache)
3. Stale cache (TTL ignored)
4. Static fallback
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Generic, Iterable, TypeVar

from loguru import logger

from catalog.services.cache import Cache, CacheEntry, CacheStats
from catalog.services.client import ResilientClient
from catalog.services.config import FetchConfig
from catalog.services.connection import ConnectionState
from catalog.services.errors import ServiceError, ValidationError

T = TypeVar("T")

Transform = Callable[[Any], Any]
StaticFallback = Callable[[], Any]


class DataSource(str, Enum):
    """Where a fetched value came from."""

    CACHE = "cache"
    NETWORK = "network"
    STALE = "stale"
    FALLBACK = "fallback"


@dataclass
class Resource:
    """A logical resource and how to load it."""

    key: str
    url: str
    method: str = "GET"
    params: dict[str, Any] | None = None
    headers: dict[str, str] | None = None
    json_data: Any = None
    transform: Transform | None = None
    fallback: StaticFallback | None = None
    ttl: timedelta | None = None


@dataclass
class FetchResult(Generic[T]):
    """Result from a fetch."""

    data: T
    source: DataSource
    error: Exception | None = None

    @property
    def is_stale(self) -> bool:
        return self.source in (DataSource.STALE, DataSource.FALLBACK)


class FetchOrchestrator:
    """
    Decides which source serves a resource and when to refresh it.

    Usage:
        orchestrator = FetchOrchestrator(cache, client)
        orchestrator.register(Resource(
            key="all_businesses",
            url="/api/benefits",
            transform=parse_businesses,
            fallback=lambda: FALLBACK_BUSINESSES,
        ))

        businesses = await orchestrator.fetch("all_businesses")

    ``fetch`` only raises when the network load fails and neither a stale
    entry nor a static fallback exists. The cache and the client are owned
    by the caller; ``close`` only stops this orchestrator's own tasks.
    """

    def __init__(
        self,
        cache: Cache,
        client: ResilientClient,
        config: FetchConfig | None = None,
        resources: Iterable[Resource] = (),
    ):
        self._cache = cache
        self._client = client
        self._config = config or FetchConfig()
        self._resources: dict[str, Resource] = {}
        # One network load per resource key at a time
        self._loads: dict[str, asyncio.Task[Any]] = {}
        self._background: set[asyncio.Task[Any]] = set()

        for resource in resources:
            self.register(resource)

    def register(self, resource: Resource) -> None:
        """Register a resource."""
        self._resources[resource.key] = resource
        logger.debug(f"Registered resource: {resource.key} -> {resource.url}")

    def get_resource(self, key: str) -> Resource:
        try:
            return self._resources[key]
        except KeyError:
            raise ValidationError(
                f"Unknown resource '{key}'", context={"key": key}
            ) from None

    @property
    def resource_keys(self) -> list[str]:
        return list(self._resources)

    async def fetch(self, resource_key: str, force_refresh: bool = False) -> Any:
        """Fetch a resource's value, degrading to stale or fallback data."""
        result = await self.fetch_result(resource_key, force_refresh=force_refresh)
        return result.data

    async def fetch_result(
        self, resource_key: str, force_refresh: bool = False
    ) -> FetchResult[Any]:
        """
        Fetch a resource and report where the value came from.

        Args:
            resource_key: Registered resource key
            force_refresh: Skip the fresh-cache lookup

        Returns:
            FetchResult with the value and its DataSource
        """
        resource = self.get_resource(resource_key)

        if not force_refresh:
            entry = await self._read_cache(resource_key)
            if entry is not None:
                if self._should_refresh(resource_key, entry):
                    self._refresh_in_background(resource)
                return FetchResult(data=entry.data, source=DataSource.CACHE)

        try:
            value = await asyncio.shield(self._start_load(resource))
            return FetchResult(data=value, source=DataSource.NETWORK)

        except Exception as e:
            logger.warning(f"Loading '{resource_key}' from network failed: {e}")

            stale = await self._read_cache(resource_key, ignore_ttl=True)
            if stale is not None:
                logger.warning(f"Returning stale cached data for '{resource_key}'")
                return FetchResult(data=stale.data, source=DataSource.STALE, error=e)

            if resource.fallback is not None:
                logger.warning(f"Returning static fallback data for '{resource_key}'")
                return FetchResult(
                    data=resource.fallback(), source=DataSource.FALLBACK, error=e
                )

            logger.error(f"No cached or fallback data for '{resource_key}'")
            raise

    async def preload(self, *resource_keys: str) -> None:
        """Start fetching resources in the background (all if none given)."""
        for key in resource_keys or tuple(self._resources):
            resource = self.get_resource(key)
            task = asyncio.create_task(self.fetch_result(resource.key))
            self._track_background(task, f"Preload of '{key}'")

    async def refresh_all(self) -> dict[str, FetchResult[Any]]:
        """Force-refresh every registered resource concurrently."""
        keys = list(self._resources)
        results = await asyncio.gather(
            *(self.fetch_result(key, force_refresh=True) for key in keys)
        )
        return dict(zip(keys, results))

    async def is_cached(self, resource_key: str) -> bool:
        """True if a valid (unexpired) entry exists."""
        return await self._read_cache(resource_key) is not None

    def is_loading(self, resource_key: str) -> bool:
        return resource_key in self._loads

    # Observability

    def connection_state(self) -> ConnectionState:
        return self._client.connection_state()

    def subscribe_connection(
        self, listener: Callable[[ConnectionState], None]
    ) -> Callable[[], None]:
        return self._client.connection.subscribe(listener)

    async def cache_stats(self) -> CacheStats:
        return await self._cache.stats()

    async def clear_cache(self, pattern: str | None = None) -> int:
        return await self._cache.clear(pattern)

    async def get_health_status(self) -> dict[str, Any]:
        """Cache, connection and load status."""
        return {
            "cache": (await self._cache.stats()).to_dict(),
            **self._client.get_health_status(),
            "loading": list(self._loads),
            "resources": self.resource_keys,
        }

    async def close(self) -> None:
        """Cancel background refreshes and running loads."""
        tasks = [*self._background, *self._loads.values()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        self._loads.clear()
        logger.debug("FetchOrchestrator closed")

    # Internals

    def _start_load(self, resource: Resource) -> asyncio.Task[Any]:
        """Join the running load for this key, or start one."""
        task = self._loads.get(resource.key)
        if task is None:
            task = asyncio.create_task(self._load(resource))
            self._loads[resource.key] = task
            task.add_done_callback(lambda t, key=resource.key: self._load_done(key, t))
        return task

    def _load_done(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._loads.get(key) is task:
            del self._loads[key]

    async def _load(self, resource: Resource) -> Any:
        response = await self._client.request(
            resource.method,
            resource.url,
            params=resource.params,
            headers=resource.headers,
            json_data=resource.json_data,
        )

        try:
            value = (
                resource.transform(response.data)
                if resource.transform is not None
                else response.data
            )
        except ServiceError:
            raise
        except Exception as e:
            raise ValidationError(
                f"Failed to transform payload for '{resource.key}': {e}",
                context={"key": resource.key},
            ) from e

        try:
            await self._cache.set(resource.key, value, resource.ttl)
        except ServiceError as e:
            logger.warning(f"Failed to cache '{resource.key}': {e}")

        logger.debug(f"Loaded '{resource.key}' from network")
        return value

    def _should_refresh(self, key: str, entry: CacheEntry) -> bool:
        """Age-based background refresh policy."""
        if not self._config.background_refresh_enabled:
            return False
        if key in self._loads:
            return False
        age = entry.age_ms(self._cache.now())
        return age >= self._config.background_refresh_threshold_ms

    def _refresh_in_background(self, resource: Resource) -> None:
        logger.debug(f"Starting background refresh of '{resource.key}'")
        self._track_background(
            self._start_load(resource), f"Background refresh of '{resource.key}'"
        )

    def _track_background(self, task: asyncio.Task[Any], description: str) -> None:
        self._background.add(task)

        def done(t: asyncio.Task[Any]) -> None:
            self._background.discard(t)
            if t.cancelled():
                return
            error = t.exception()
            if error is not None:
                logger.warning(f"{description} failed: {error}")

        task.add_done_callback(done)

    async def _read_cache(
        self, key: str, ignore_ttl: bool = False
    ) -> CacheEntry | None:
        """Cache read where any cache failure counts as a miss."""
        try:
            # Expired entries stay in the store for the stale path
            return await self._cache.get_entry(
                key, ignore_ttl=ignore_ttl, evict_expired=False
            )
        except ServiceError as e:
            logger.warning(f"Cache read for '{key}' failed, treating as miss: {e}")
            return None
