"""Wiring of the long-lived pipeline components."""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import httpx
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession

from grocart.cache.store_cache import StoreCache
from grocart.discovery.store_discovery import StoreDiscovery, default_locators
from grocart.ingest.http_client import Fetcher
from grocart.ingest.sources import SourceRegistry, source_registry
from grocart.search.orchestrator import SearchOrchestrator
from grocart.worker.job_queue import RedisQueueBackend, ScrapeJobQueue
from grocart.worker.tasks import ScrapeTaskRunner

logger = logging.getLogger(__name__)


@dataclass
class Services:
    session_factory: Callable[[], AsyncSession]
    sources: SourceRegistry
    fetcher: Fetcher
    store_cache: StoreCache
    store_discovery: StoreDiscovery
    job_queue: ScrapeJobQueue
    task_runner: ScrapeTaskRunner
    orchestrator: SearchOrchestrator

    async def start(self) -> str:
        """Connect the queue (durable or direct) and start its worker."""
        mode = await self.job_queue.initialize()
        await self.job_queue.start()
        return mode

    async def close(self) -> None:
        await self.job_queue.close()
        await self.store_cache.close()
        await self.fetcher.close()


def build_services(
    session_factory: Optional[Callable[[], AsyncSession]] = None,
    redis_client: Optional[redis.Redis] = None,
    sources: Optional[SourceRegistry] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    wait_seconds: Optional[float] = None,
    queue_backoff_seconds: Optional[float] = None,
) -> Services:
    """
    Build the component graph.

    Args:
        session_factory: AsyncSession factory (defaults to the app engine)
        redis_client: Shared Redis client for cache and queue (else settings.redis_url)
        sources: Source registry (defaults to the built-in sources)
        http_client: httpx client used by the fetcher
        wait_seconds: Orchestrator's bounded wait for scrape jobs
        queue_backoff_seconds: First retry delay of failed jobs
    """
    if session_factory is None:
        from grocart.db.session import AsyncSessionLocal

        session_factory = AsyncSessionLocal

    sources = sources or source_registry
    fetcher = Fetcher(sources=sources, client=http_client)
    store_cache = StoreCache(redis_client=redis_client)
    store_discovery = StoreDiscovery(
        session_factory, default_locators(fetcher, sources), cache=store_cache
    )
    job_queue = ScrapeJobQueue(
        backend=RedisQueueBackend(redis_client=redis_client),
        backoff_seconds=queue_backoff_seconds,
    )
    task_runner = ScrapeTaskRunner(
        session_factory,
        fetcher,
        store_discovery,
        job_queue=job_queue,
        sources=sources,
    )
    orchestrator = SearchOrchestrator(
        session_factory,
        store_discovery,
        job_queue,
        sources=sources,
        wait_seconds=wait_seconds,
    )
    return Services(
        session_factory=session_factory,
        sources=sources,
        fetcher=fetcher,
        store_cache=store_cache,
        store_discovery=store_discovery,
        job_queue=job_queue,
        task_runner=task_runner,
        orchestrator=orchestrator,
    )
