from typing import Any, Callable

import httpx
import pytest

from catalog.datastore.base import MemoryStore
from catalog.services.cache import Cache
from catalog.services.client import ResilientClient
from catalog.services.config import FetchConfig
from helpers import BASE_URL, CallCounter, FakeClock, RecordingSleep


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def config() -> FetchConfig:
    return FetchConfig()


@pytest.fixture
def cache(store: MemoryStore, config: FetchConfig, clock: FakeClock) -> Cache:
    return Cache(store, config, clock=clock)


@pytest.fixture
async def make_client():
    """Factory for a ResilientClient over a counted MockTransport."""
    created: list[tuple[ResilientClient, httpx.AsyncClient]] = []

    def factory(
        handler: Callable[[httpx.Request], Any],
        **options: Any,
    ) -> tuple[ResilientClient, CallCounter, RecordingSleep]:
        counter = CallCounter(handler)
        sleep = RecordingSleep()
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(counter))
        client = ResilientClient(
            FetchConfig.from_options(options),
            base_url=BASE_URL,
            http_client=http_client,
            sleep=sleep,
        )
        created.append((client, http_client))
        return client, counter, sleep

    yield factory

    for client, http_client in created:
        await client.close()
        await http_client.aclose()
