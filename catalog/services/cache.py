"""
Cache - Persistent cache with TTL, schema versioning and size management.

Features:
- Entries persisted through a PersistentStore under a versioned key prefix
- TTL validity with lazy expiration on read
- Stale reads (TTL ignored) for fallback paths
- Entry-count and byte-size bounds with oldest-first eviction
- Periodic cleanup job on an APScheduler AsyncIOScheduler owned by the cache
"""

import asyncio
import json
import math
import re
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic_core import PydanticSerializationError, to_jsonable_python

from catalog.datastore.base import PersistentStore, QuotaExceededError
from catalog.services.config import FetchConfig
from catalog.services.errors import CacheError, StorageError


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class CacheEntry(BaseModel):
    """A single persisted cache record."""

    model_config = ConfigDict(populate_by_name=True)

    data: Any
    written_at: int = Field(alias="writtenAt")
    ttl_ms: int = Field(alias="ttlMs")
    schema_version: str = Field(alias="schemaVersion")
    size_bytes: int = Field(default=0, alias="sizeBytes")

    def age_ms(self, now: int) -> int:
        return now - self.written_at

    def is_expired(self, now: int) -> bool:
        """Check if entry is past its TTL."""
        return self.age_ms(now) >= self.ttl_ms

    def is_valid(self, schema_version: str, now: int) -> bool:
        """Current schema version and within TTL."""
        return self.schema_version == schema_version and not self.is_expired(now)


@dataclass
class _StoredRecord:
    full_key: str
    key: str
    entry: CacheEntry | None
    size: int

    @property
    def sort_key(self) -> tuple[int, str]:
        # Unparsable records sort first so they are evicted first
        written_at = self.entry.written_at if self.entry else -1
        return (written_at, self.key)


@dataclass
class CacheStats:
    """Cache statistics."""

    entry_count: int = 0
    total_bytes: int = 0
    hits: int = 0
    misses: int = 0
    stale_hits: int = 0
    evictions: int = 0
    oldest_written_at: int | None = None
    newest_written_at: int | None = None

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "entries": self.entry_count,
            "bytes": self.total_bytes,
            "hits": self.hits,
            "misses": self.misses,
            "stale_hits": self.stale_hits,
            "evictions": self.evictions,
            "oldest_written_at": self.oldest_written_at,
            "newest_written_at": self.newest_written_at,
            "hit_rate": f"{self.hit_rate:.2%}",
        }


class Cache:
    """
    Persistent TTL cache over a key/value store.

    Usage:
        cache = Cache(MemoryStore(), FetchConfig())
        await cache.init()

        value = await cache.get("all_businesses")
        if value is None:
            value = await load()
            await cache.set("all_businesses", value)

        await cache.shutdown()

    Values must be JSON-serializable (pydantic models are dumped to their
    JSON form). ``None`` cannot be told apart from a miss and is not cached
    meaningfully.
    """

    def __init__(
        self,
        store: PersistentStore,
        config: FetchConfig | None = None,
        clock: Callable[[], int] | None = None,
        debug: bool = False,
    ):
        self._store = store
        self._config = config or FetchConfig()
        self._clock = clock or _epoch_ms
        self._debug = debug
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0
        self._stale_hits = 0
        self._evictions = 0
        self._migrated = False
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def schema_version(self) -> str:
        return self._config.schema_version

    @property
    def prefix(self) -> str:
        """Store-wide key prefix for the current schema version."""
        return f"{self._config.cache_prefix}_v{self._config.schema_version}_"

    def store_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def now(self) -> int:
        """Current time in epoch milliseconds, from the cache's clock."""
        return self._clock()

    # Lifecycle

    async def init(self) -> None:
        """Purge old schema versions, clean up once, start the cleanup timer."""
        logger.info(
            f"Initializing cache (prefix={self.prefix}, "
            f"max_entries={self._config.max_entries}, "
            f"max_bytes={self._config.max_storage_bytes})"
        )
        async with self._lock:
            await self._migrate_once()
            await self._cleanup()

        if self._scheduler is None:
            interval = self._config.cleanup_interval_ms / 1000
            self._scheduler = AsyncIOScheduler()
            self._scheduler.add_job(
                self._cleanup_job,
                trigger="interval",
                seconds=interval,
                id=f"cache_cleanup_{self.prefix}",
                name="Cache cleanup",
                replace_existing=True,
            )
            self._scheduler.start()
            logger.debug(f"Cache cleanup scheduled every {interval:g}s")

    async def shutdown(self) -> None:
        """Stop the periodic cleanup job."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.debug("Cache cleanup scheduler stopped")

    @property
    def cleanup_scheduled(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def __aenter__(self) -> "Cache":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    # Public operations

    async def get(self, key: str) -> Any | None:
        """Return the cached value, or None if missing, expired or incompatible."""
        entry = await self.get_entry(key)
        return entry.data if entry else None

    async def get_ignoring_ttl(self, key: str) -> Any | None:
        """Return the cached value even if expired (schema version still checked)."""
        entry = await self.get_entry(key, ignore_ttl=True)
        return entry.data if entry else None

    async def get_entry(
        self, key: str, ignore_ttl: bool = False, evict_expired: bool = True
    ) -> CacheEntry | None:
        """
        Get the full entry for a key.

        Invalid entries are removed on read. Expired entries are returned when
        ``ignore_ttl`` is set, and kept in the store (but reported as a miss)
        when ``evict_expired`` is off, so a later stale read still finds them.
        """
        full_key = self.store_key(key)
        async with self._lock:
            await self._migrate_once()
            raw = await self._store_call("get", self._store.get(full_key))

            if raw is None:
                self._record_miss(ignore_ttl)
                self._log(f"MISS: {key[:50]}")
                return None

            entry = self._parse(raw)
            if entry is None:
                logger.warning(f"Failed to parse cache entry '{key}', removing it")
                await self._store_call("remove", self._store.remove(full_key))
                self._record_miss(ignore_ttl)
                return None

            if entry.schema_version != self.schema_version:
                await self._store_call("remove", self._store.remove(full_key))
                self._record_miss(ignore_ttl)
                self._log(f"VERSION MISMATCH: {key[:50]}")
                return None

            now = self._clock()
            if entry.is_expired(now):
                if not ignore_ttl:
                    if evict_expired:
                        await self._store_call("remove", self._store.remove(full_key))
                    self._misses += 1
                    self._log(f"EXPIRED: {key[:50]}")
                    return None
                self._stale_hits += 1
                self._log(f"STALE HIT: {key[:50]}")
                return entry

            if ignore_ttl:
                self._stale_hits += 1
            else:
                self._hits += 1
            self._log(f"HIT: {key[:50]}")
            return entry

    async def set(self, key: str, value: Any, ttl: timedelta | None = None) -> None:
        """
        Set value in cache.

        Raises:
            CacheError: value could not be serialized
            StorageError: the store rejected the write; the oldest half of
                the entries has been evicted, the write is not retried
        """
        ttl_ms = (
            int(ttl.total_seconds() * 1000) if ttl is not None else self._config.ttl_ms
        )

        try:
            data = to_jsonable_python(value)
            payload = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
        except (PydanticSerializationError, TypeError, ValueError) as e:
            raise CacheError(
                f"Failed to serialize cache entry '{key}': {e}", context={"key": key}
            ) from e

        entry = CacheEntry(
            data=data,
            written_at=self._clock(),
            ttl_ms=ttl_ms,
            schema_version=self.schema_version,
            size_bytes=len(payload.encode("utf-8")),
        )
        record = entry.model_dump_json(by_alias=True)
        record_size = len(record.encode("utf-8"))

        if record_size > self._config.max_storage_bytes:
            raise StorageError(
                f"Cache entry '{key}' ({record_size} bytes) exceeds the "
                f"storage limit of {self._config.max_storage_bytes} bytes",
                context={"key": key, "size": record_size},
            )

        full_key = self.store_key(key)
        async with self._lock:
            await self._migrate_once()
            await self._ensure_space(key, record_size)

            try:
                await self._store.set(full_key, record)
            except QuotaExceededError as e:
                logger.warning("Storage quota exceeded, performing aggressive cleanup")
                await self._evict_fraction(0.5)
                raise StorageError(
                    "Storage quota exceeded", context={"key": key}
                ) from e
            except Exception as e:
                raise StorageError(
                    f"Failed to write cache entry '{key}': {e}", context={"key": key}
                ) from e

            self._log(f"SET: {key[:50]} ({record_size} bytes, TTL: {ttl_ms}ms)")

    async def remove(self, key: str) -> None:
        """Delete a specific key from cache."""
        async with self._lock:
            await self._migrate_once()
            await self._store_call("remove", self._store.remove(self.store_key(key)))
            self._log(f"REMOVE: {key[:50]}")

    async def clear(self, pattern: str | None = None) -> int:
        """
        Remove entries under the current prefix.

        Args:
            pattern: ``*``-wildcard pattern searched within the logical key;
                every entry is removed when omitted

        Returns:
            Number of entries removed
        """
        matcher = _compile_pattern(pattern) if pattern else None
        async with self._lock:
            await self._migrate_once()
            removed = 0
            for full_key in await self._prefixed_keys():
                key = full_key[len(self.prefix) :]
                if matcher is None or matcher.search(key):
                    await self._store_call("remove", self._store.remove(full_key))
                    removed += 1

        logger.info(f"Cache cleared (pattern={pattern!r}, removed={removed})")
        return removed

    async def cleanup(self) -> int:
        """Remove expired entries and enforce max_entries. Returns removed count."""
        async with self._lock:
            await self._migrate_once()
            return await self._cleanup()

    async def stats(self) -> CacheStats:
        """Get cache statistics."""
        async with self._lock:
            records = await self._scan()

        timestamps = [r.entry.written_at for r in records if r.entry is not None]
        return CacheStats(
            entry_count=len(records),
            total_bytes=sum(r.size for r in records),
            hits=self._hits,
            misses=self._misses,
            stale_hits=self._stale_hits,
            evictions=self._evictions,
            oldest_written_at=min(timestamps) if timestamps else None,
            newest_written_at=max(timestamps) if timestamps else None,
        )

    # Internals (callers hold self._lock)

    async def _migrate_once(self) -> None:
        """Purge keys written under any other schema version of this prefix."""
        if self._migrated:
            return
        family = _versioned_key_pattern(self._config.cache_prefix)
        stale = []
        for k in await self._store_call("keys", self._store.keys()):
            match = family.match(k)
            if match and match.group(1) != self.schema_version:
                stale.append(k)
        for full_key in stale:
            await self._store_call("remove", self._store.remove(full_key))
        if stale:
            logger.info(
                f"Purged {len(stale)} cache entries from previous schema versions "
                f"(current: {self.schema_version})"
            )
        self._migrated = True

    async def _cleanup(self) -> int:
        now = self._clock()
        removed_expired = 0
        valid: list[_StoredRecord] = []

        for record in await self._scan():
            if record.entry is None or not record.entry.is_valid(
                self.schema_version, now
            ):
                await self._store_call("remove", self._store.remove(record.full_key))
                removed_expired += 1
            else:
                valid.append(record)

        removed_for_size = 0
        overflow = len(valid) - self._config.max_entries
        if overflow > 0:
            valid.sort(key=lambda r: r.sort_key)
            for record in valid[:overflow]:
                await self._store_call("remove", self._store.remove(record.full_key))
                removed_for_size += 1
            self._evictions += removed_for_size

        if removed_expired or removed_for_size:
            logger.info(
                f"Cache cleanup completed (expired={removed_expired}, "
                f"evicted={removed_for_size}, "
                f"remaining={len(valid) - removed_for_size})"
            )
        return removed_expired + removed_for_size

    async def _cleanup_job(self) -> None:
        """Scheduled cleanup"""
        try:
            await self.cleanup()
        except Exception as e:
            logger.error(f"Error in scheduled cache cleanup: {e}")

    async def _ensure_space(self, key: str, required: int) -> None:
        """Evict oldest entries (never ``key``) until the new record fits."""
        others = sorted(
            (r for r in await self._scan() if r.key != key),
            key=lambda r: r.sort_key,
        )

        victims: list[_StoredRecord] = []
        overflow = len(others) + 1 - self._config.max_entries
        if overflow > 0:
            victims.extend(others[:overflow])
            others = others[overflow:]

        used = sum(r.size for r in others)
        for record in others:
            if used + required <= self._config.max_storage_bytes:
                break
            victims.append(record)
            used -= record.size

        for record in victims:
            await self._store_call("remove", self._store.remove(record.full_key))
            self._evictions += 1
            self._log(f"EVICT: {record.key[:50]}")

    async def _evict_fraction(self, fraction: float) -> None:
        records = sorted(await self._scan(), key=lambda r: r.sort_key)
        count = math.ceil(len(records) * fraction)
        for record in records[:count]:
            await self._store_call("remove", self._store.remove(record.full_key))
            self._evictions += 1
        logger.warning(f"Aggressive eviction removed {count} cache entries")

    async def _prefixed_keys(self) -> list[str]:
        keys = await self._store_call("keys", self._store.keys())
        return [k for k in keys if k.startswith(self.prefix)]

    async def _scan(self) -> list[_StoredRecord]:
        records = []
        for full_key in await self._prefixed_keys():
            raw = await self._store_call("get", self._store.get(full_key))
            if raw is None:
                continue
            records.append(
                _StoredRecord(
                    full_key=full_key,
                    key=full_key[len(self.prefix) :],
                    entry=self._parse(raw),
                    size=len(raw.encode("utf-8")),
                )
            )
        return records

    @staticmethod
    def _parse(raw: str) -> CacheEntry | None:
        try:
            return CacheEntry.model_validate_json(raw)
        except PydanticValidationError:
            return None

    @staticmethod
    async def _store_call(operation: str, awaitable: Any) -> Any:
        try:
            return await awaitable
        except Exception as e:
            raise StorageError(
                f"Store {operation} failed: {e}", context={"operation": operation}
            ) from e

    def _record_miss(self, stale_read: bool) -> None:
        if not stale_read:
            self._misses += 1

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Cache] {message}")


def _compile_pattern(pattern: str) -> re.Pattern[str]:
    return re.compile(".*".join(re.escape(part) for part in pattern.split("*")))


def _versioned_key_pattern(cache_prefix: str) -> re.Pattern[str]:
    # Schema versions start with a digit, so "{prefix}_vendor_..." is not ours
    return re.compile(rf"^{re.escape(cache_prefix)}_v(\d[^_]*)_")
