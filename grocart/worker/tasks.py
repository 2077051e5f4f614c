"""Scrape job handlers: per-store search scrapes, ZIP refreshes and the weekly sweep."""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from grocart.cache.freshness import FreshnessTracker, freshness_tracker
from grocart.config import settings
from grocart.db.models import SearchArea, Store
from grocart.discovery.store_discovery import StoreDiscovery
from grocart.ingest.extractors import Extractor, get_extractor
from grocart.ingest.http_client import FetchError, Fetcher
from grocart.ingest.price_ingestor import PriceIngestor, price_ingestor
from grocart.ingest.sources import SourceRegistry, source_registry
from grocart.logging_config import get_logger
from grocart.worker.job_queue import EnqueueResult, ScrapeJob, ScrapeJobQueue

logger = logging.getLogger(__name__)

KIND_STORE_SEARCH = "store-search"
KIND_ZIP_REFRESH = "zip-refresh"
KIND_WEEKLY_REFRESH = "weekly-refresh"
KIND_POPULAR_REFRESH = "popular-refresh"

WEEKLY_REFRESH_TARGET = "weekly-refresh"
POPULAR_REFRESH_TARGET = "popular-stores"


class JobPayloadError(RuntimeError):
    """The job cannot succeed as written (unknown kind, missing store, bad payload)."""

    retryable = False


class RefreshFailedError(RuntimeError):
    """Every scrape of a refresh job failed."""


def store_target(store_id: int) -> str:
    return f"store:{store_id}"


def zip_target(zip_code: str) -> str:
    return f"zip:{zip_code}"


class ScrapeTaskRunner:
    """
    Executes queued scrape jobs.

    Database sessions are opened per step and never held across a fetch.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        fetcher: Fetcher,
        store_discovery: StoreDiscovery,
        job_queue: Optional[ScrapeJobQueue] = None,
        sources: Optional[SourceRegistry] = None,
        ingestor: Optional[PriceIngestor] = None,
        freshness: Optional[FreshnessTracker] = None,
        extractor_lookup: Callable[[str], Extractor] = get_extractor,
    ):
        self.session_factory = session_factory
        self.fetcher = fetcher
        self.store_discovery = store_discovery
        self.job_queue = job_queue
        self.sources = sources or source_registry
        self.ingestor = ingestor or price_ingestor
        self.freshness = freshness or freshness_tracker
        self.extractor_lookup = extractor_lookup

        if job_queue is not None:
            job_queue.set_handler(self.handle_job)

    async def handle_job(self, job: ScrapeJob) -> dict[str, Any]:
        """Dispatch one job by kind; the return value becomes the job result."""
        log = get_logger(__name__, job_id=job.job_id, target_key=job.target_key)
        payload = job.payload or {}

        if job.kind == KIND_STORE_SEARCH:
            if "store_id" not in payload or not payload.get("query"):
                raise JobPayloadError(f"{job.job_id}: store_id and query are required")
            log.info(f"Store search for '{payload['query']}'")
            return await self.scrape_store(
                int(payload["store_id"]), payload["query"], payload.get("limit")
            )

        if job.kind == KIND_ZIP_REFRESH:
            zip_code = payload.get("zip_code")
            if not zip_code:
                raise JobPayloadError(f"{job.job_id}: zip_code is required")
            log.info(f"Refreshing ZIP {zip_code}")
            return await self.refresh_zip(
                zip_code,
                radius=payload.get("radius"),
                terms=payload.get("terms"),
                force=payload.get("force", True),
            )

        if job.kind == KIND_WEEKLY_REFRESH:
            return await self.run_weekly_refresh()

        if job.kind == KIND_POPULAR_REFRESH:
            return await self.refresh_popular_stores(payload.get("terms"))

        raise JobPayloadError(f"Unknown job kind: {job.kind}")

    async def scrape_store(
        self, store_id: int, query: str, limit: Optional[int] = None
    ) -> dict[str, Any]:
        """
        Fetch, extract and ingest one search at one store.

        Args:
            store_id: Internal store id
            query: Search term
            limit: Max products requested from the source

        Returns:
            Ingest counters plus the ids of every product seen
        """
        limit = limit or settings.search_default_limit

        async with self.session_factory() as db:
            store = await db.get(Store, store_id)
            if store is None or not store.active:
                raise JobPayloadError(f"Store {store_id} not found or inactive")
            chain = store.chain_name
            context = {
                "query": query,
                "store_external_id": store.external_store_id,
                "zip_code": store.zip_code or "",
                "limit": limit,
            }

        source = self.sources.for_chain(chain)
        fetched = await self.fetcher.fetch(source.build_request(context))
        products = self.extractor_lookup(source.name).extract(fetched.text)[:limit]

        async with self.session_factory() as db:
            store = await db.get(Store, store_id)
            result = await self.ingestor.ingest_batch(db, store, products)

        return {
            "store_id": store_id,
            "chain": chain,
            "source": source.name,
            "query": query,
            **result.to_dict(),
        }

    async def refresh_zip(
        self,
        zip_code: str,
        radius: Optional[float] = None,
        terms: Optional[Sequence[str]] = None,
        force: bool = True,
    ) -> dict[str, Any]:
        """
        Scrape every searchable store near ``zip_code`` for each term.

        Non-forced refreshes leave fresh or cooling-down stores alone.
        Individual scrape failures are logged; the job fails only if all of them do.
        """
        radius = radius or settings.default_radius_miles
        terms = list(terms or settings.popular_search_terms)

        stores = await self.store_discovery.discover_stores(zip_code, radius)
        stores = [s for s in stores if s.id is not None and self.sources.has_chain(s.chain_name)]

        if not force:
            async with self.session_factory() as db:
                partition = await self.freshness.partition(db, stores)
            stores = partition.scrape

        attempted = failed = prices = 0
        for store in stores:
            for term in terms:
                attempted += 1
                try:
                    result = await self.scrape_store(store.id, term)
                    prices += result["prices_written"]
                except FetchError as e:
                    failed += 1
                    logger.warning(
                        f"Refresh scrape failed for {store.chain_name} {store.external_store_id} "
                        f"'{term}': {e}"
                    )
                except Exception as e:
                    failed += 1
                    logger.error(
                        f"Refresh scrape errored for {store.chain_name} {store.external_store_id} "
                        f"'{term}': {e}",
                        exc_info=True,
                    )

        if attempted and failed == attempted:
            raise RefreshFailedError(f"All {attempted} scrapes failed for ZIP {zip_code}")

        logger.info(
            f"ZIP {zip_code} refresh: {len(stores)} stores, {attempted - failed}/{attempted} "
            f"scrapes succeeded, {prices} prices written"
        )
        return {
            "zip_code": zip_code,
            "stores": len(stores),
            "scrapes": attempted,
            "failed": failed,
            "prices_written": prices,
        }

    async def active_zip_codes(self, days: Optional[int] = None) -> list[str]:
        """ZIP codes with organic searches in the last ``days`` days."""
        since = datetime.utcnow() - timedelta(days=days or settings.active_zip_days)
        async with self.session_factory() as db:
            result = await db.execute(
                select(SearchArea.zip_code)
                .where(SearchArea.last_searched_at >= since)
                .order_by(SearchArea.zip_code)
            )
            return list(result.scalars().all())

    async def run_weekly_refresh(self) -> dict[str, Any]:
        """Enqueue a low-priority forced refresh for every active ZIP."""
        if self.job_queue is None:
            raise JobPayloadError("Weekly refresh needs a job queue")

        zip_codes = await self.active_zip_codes()
        enqueued = 0
        for zip_code in zip_codes:
            handle = await self.enqueue_zip_refresh(
                zip_code, trigger="weekly_refresh", priority="low"
            )
            if handle.created:
                enqueued += 1

        logger.info(f"Weekly refresh: {enqueued} of {len(zip_codes)} ZIP refreshes enqueued")
        return {"zip_codes": len(zip_codes), "enqueued": enqueued}

    async def refresh_popular_stores(self, terms: Optional[Sequence[str]] = None) -> dict[str, Any]:
        """Re-scrape popular terms at stores that have had prices recently."""
        terms = list(terms or settings.popular_search_terms)
        async with self.session_factory() as db:
            stores = await self.freshness.get_stores_needing_refresh(db)

        refreshed = failed = 0
        for store in stores:
            if not self.sources.has_chain(store.chain_name):
                continue
            for term in terms:
                try:
                    await self.scrape_store(store.id, term)
                    refreshed += 1
                except FetchError as e:
                    failed += 1
                    logger.warning(f"Popular refresh failed for store {store.id} '{term}': {e}")
                except Exception as e:
                    failed += 1
                    logger.error(f"Popular refresh errored for store {store.id} '{term}': {e}", exc_info=True)

        logger.info(f"Popular refresh: {refreshed} scrapes across {len(stores)} stores, {failed} failed")
        return {"stores": len(stores), "scrapes": refreshed, "failed": failed}

    async def enqueue_zip_refresh(
        self, zip_code: str, trigger: str = "manual", priority: str = "normal"
    ) -> EnqueueResult:
        return await self.job_queue.enqueue(
            zip_target(zip_code),
            KIND_ZIP_REFRESH,
            payload={"zip_code": zip_code, "force": True},
            trigger=trigger,
            priority=priority,
        )

    async def enqueue_weekly_refresh(self) -> EnqueueResult:
        """Scheduler entry point: the sweep itself runs as a queued job."""
        return await self.job_queue.enqueue(
            WEEKLY_REFRESH_TARGET,
            KIND_WEEKLY_REFRESH,
            trigger="weekly_refresh",
            priority="low",
        )

    async def enqueue_popular_refresh(self, trigger: str = "manual") -> EnqueueResult:
        return await self.job_queue.enqueue(
            POPULAR_REFRESH_TARGET, KIND_POPULAR_REFRESH, trigger=trigger, priority="low"
        )
