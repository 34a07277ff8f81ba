"""
Base data source interface.
"""

from abc import ABC, abstractmethod
from typing import Any, TypeVar

from pydantic import TypeAdapter

from catalog.services.orchestrator import FetchOrchestrator, FetchResult, Resource

T = TypeVar("T")


class BaseDataSource(ABC):
    """
    Abstract base class for all data sources.

    All data sources should:
    - Declare their resources (URL, transform, static fallback)
    - Fetch through the FetchOrchestrator (cache, retries, fallbacks)
    - Return typed values (pydantic models)
    """

    def __init__(self, orchestrator: FetchOrchestrator):
        self.orchestrator = orchestrator
        for resource in self.resources():
            orchestrator.register(resource)

    @property
    @abstractmethod
    def source_id(self) -> str:
        """Unique identifier for this data source."""
        ...

    @abstractmethod
    def resources(self) -> list[Resource]:
        """Resources this source serves."""
        ...

    async def fetch_typed(
        self,
        resource_key: str,
        adapter: TypeAdapter[T],
        force_refresh: bool = False,
    ) -> FetchResult[T]:
        """
        Fetch a resource and validate it into ``adapter``'s type.

        Cached values come back in their JSON form; network values are
        already transformed. Validation accepts both.
        """
        result: FetchResult[Any] = await self.orchestrator.fetch_result(
            resource_key, force_refresh=force_refresh
        )
        return FetchResult(
            data=adapter.validate_python(result.data),
            source=result.source,
            error=result.error,
        )
