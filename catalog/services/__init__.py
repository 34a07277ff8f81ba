"""
Service layer infrastructure - resilient data access for the catalog API.

Provides:
- Cache: Persistent TTL cache with versioning, size bounds and eviction
- RequestDeduplicator: Shares one request between concurrent identical callers
- ConnectionMonitor: Online / degraded / offline inference
- ResilientClient: HTTP client with retry/backoff, dedup and connection tracking
- FetchOrchestrator: Fresh cache → network → stale cache → static fallback
"""

from catalog.services.errors import (
    ServiceError,
    NetworkError,
    RequestTimeoutError,
    ValidationError,
    StorageError,
    CacheError,
)
from catalog.services.config import FetchConfig
from catalog.services.retry import RetryPolicy, retry_with_backoff
from catalog.services.cache import Cache, CacheEntry, CacheStats
from catalog.services.connection import ConnectionMonitor, ConnectionState
from catalog.services.deduplicator import RequestDeduplicator
from catalog.services.client import HttpResponse, ResilientClient
from catalog.services.orchestrator import (
    DataSource,
    FetchOrchestrator,
    FetchResult,
    Resource,
)

__all__ = [
    # Errors
    "ServiceError",
    "NetworkError",
    "RequestTimeoutError",
    "ValidationError",
    "StorageError",
    "CacheError",
    # Config
    "FetchConfig",
    # Retry
    "RetryPolicy",
    "retry_with_backoff",
    # Cache
    "Cache",
    "CacheEntry",
    "CacheStats",
    # Connection
    "ConnectionMonitor",
    "ConnectionState",
    # Deduplicator
    "RequestDeduplicator",
    # Client
    "ResilientClient",
    "HttpResponse",
    # Orchestrator
    "FetchOrchestrator",
    "FetchResult",
    "Resource",
    "DataSource",
]
