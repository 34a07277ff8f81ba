"""
Catalog entry point.
Builds the cache, client and orchestrator, fetches the catalog once and shuts down.
"""

import asyncio
import sys

from loguru import logger

from catalog.datasource.benefits import BenefitsSource
from catalog.datastore.repositories import SQLStore
from catalog.services import Cache, FetchOrchestrator, ResilientClient
from catalog.settings import global_settings


async def main() -> None:
    logger.remove()
    logger.add(sys.stderr, level=global_settings.log_level.upper())

    logger.info("Starting catalog fetch...")
    config = global_settings.fetch_config()

    store = SQLStore(
        global_settings.cache_db_url,
        capacity_bytes=global_settings.cache_capacity_bytes,
    )
    await store.open()

    cache = Cache(store, config, debug=global_settings.debug)
    client = ResilientClient(
        config, base_url=global_settings.api_base_url, debug=global_settings.debug
    )
    orchestrator = FetchOrchestrator(cache, client, config)
    source = BenefitsSource(orchestrator)

    try:
        await cache.init()

        benefits = await source.get_benefits()
        categories = await source.get_categories()
        banks = await source.get_banks()

        logger.info(
            f"Catalog: {len(benefits.data)} benefits ({benefits.source.value}), "
            f"{len(categories)} categories, {len(banks)} banks"
        )
        logger.info(f"Connection: {orchestrator.connection_state().value}")
        logger.info(f"Cache: {(await orchestrator.cache_stats()).to_dict()}")

    except Exception as e:
        logger.error(f"Error fetching catalog: {e}")
    finally:
        logger.info("Shutting down...")
        await orchestrator.close()
        await client.close()
        await cache.shutdown()
        await store.close()
        logger.info("Catalog fetch finished")


if __name__ == "__main__":
    asyncio.run(main())
