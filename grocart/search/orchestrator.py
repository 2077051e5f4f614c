"""Answer "find product X near ZIP Y" from cache plus on-demand scrapes."""

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from grocart import metrics
from grocart.cache.freshness import FreshnessTracker, freshness_tracker
from grocart.config import settings
from grocart.db.models import Product, SearchArea, StorePrice
from grocart.discovery.locators import StoreRecord
from grocart.discovery.store_discovery import StoreDiscovery
from grocart.ingest.sources import SourceRegistry, source_registry
from grocart.worker.job_queue import ScrapeJob, ScrapeJobQueue
from grocart.worker.tasks import KIND_STORE_SEARCH, store_target

logger = logging.getLogger(__name__)

ZIP_RE = re.compile(r"^\d{5}$")
NO_STORES_MESSAGE = "No stores found in your area"


class InvalidSearchRequest(ValueError):
    """Search parameters rejected before any work is done."""


@dataclass
class SearchResult:
    products: list[dict[str, Any]] = field(default_factory=list)
    fresh_data: bool = False
    cache_hit: bool = False
    stores_searched: int = 0
    stores_scraped: int = 0
    may_be_incomplete: bool = False
    message: Optional[str] = None
    total_found: int = 0
    search_term: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "products": self.products,
            "freshData": self.fresh_data,
            "cacheHit": self.cache_hit,
            "storesSearched": self.stores_searched,
            "storesScraped": self.stores_scraped,
            "mayBeIncomplete": self.may_be_incomplete,
            "message": self.message,
            "totalFound": self.total_found,
            "searchTerm": self.search_term,
        }


def validate_search(
    query: Optional[str], zip_code: Optional[str], radius: float, limit: int
) -> str:
    """
    Reject malformed search input.

    Returns:
        The stripped query
    """
    query = (query or "").strip()
    if not query:
        raise InvalidSearchRequest("Search query is required")
    if len(query) > settings.search_max_query_length:
        raise InvalidSearchRequest(
            f"Search query must be at most {settings.search_max_query_length} characters"
        )
    if not zip_code or not ZIP_RE.match(zip_code):
        raise InvalidSearchRequest("ZIP code must be 5 digits")
    if radius is None or radius <= 0 or radius > settings.max_radius_miles:
        raise InvalidSearchRequest(
            f"Radius must be greater than 0 and at most {settings.max_radius_miles:g} miles"
        )
    if limit is None or limit < 1 or limit > settings.search_max_limit:
        raise InvalidSearchRequest(f"Limit must be between 1 and {settings.search_max_limit}")
    return query


class SearchOrchestrator:
    """
    Composes discovery, freshness, the job queue and the catalog.

    Pipeline: discover stores, split them by freshness, enqueue scrapes for
    the stale ones and wait a bounded time, then merge freshly scraped and
    cached products.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        store_discovery: StoreDiscovery,
        job_queue: ScrapeJobQueue,
        freshness: Optional[FreshnessTracker] = None,
        sources: Optional[SourceRegistry] = None,
        wait_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.store_discovery = store_discovery
        self.job_queue = job_queue
        self.freshness = freshness or freshness_tracker
        self.sources = sources or source_registry
        self.wait_seconds = wait_seconds if wait_seconds is not None else settings.search_wait_seconds

    async def search(
        self,
        query: str,
        zip_code: str,
        radius: Optional[float] = None,
        limit: Optional[int] = None,
        force_refresh: bool = False,
    ) -> SearchResult:
        """
        Search for ``query`` at stores within ``radius`` miles of ``zip_code``.

        Args:
            query: Product search term
            zip_code: 5-digit ZIP
            radius: Miles (default settings.default_radius_miles)
            limit: Max products returned (default settings.search_default_limit)
            force_refresh: Scrape every store regardless of freshness and cooldown

        Returns:
            SearchResult

        Raises:
            InvalidSearchRequest: on malformed input (nothing is enqueued)
        """
        radius = settings.default_radius_miles if radius is None else radius
        limit = settings.search_default_limit if limit is None else limit
        try:
            query = validate_search(query, zip_code, radius, limit)
        except InvalidSearchRequest:
            metrics.search_requests_total.labels(outcome="invalid").inc()
            raise

        started = time.monotonic()
        await self.record_search_area(zip_code)

        stores = await self.store_discovery.discover_stores(zip_code, radius)
        stores = [s for s in stores if s.id is not None]
        if not stores:
            metrics.search_requests_total.labels(outcome="no_stores").inc()
            logger.info(f"No stores near {zip_code} within {radius} mi")
            return SearchResult(message=NO_STORES_MESSAGE, search_term=query)

        async with self.session_factory() as db:
            partition = await self.freshness.partition(db, stores, force=force_refresh)

        # Stores without a search source can only be served from cache
        to_scrape = [s for s in partition.scrape if self.sources.has_chain(s.chain_name)]
        unscrapable = [s for s in partition.scrape if not self.sources.has_chain(s.chain_name)]

        jobs = await self._submit_scrapes(to_scrape, query, limit)
        may_be_incomplete = len(jobs) < len(to_scrape)

        finished: dict[str, Optional[ScrapeJob]] = {}
        if jobs:
            finished = await self.job_queue.wait_for(list(jobs), timeout=self.wait_seconds)

        scraped_ids: set[int] = set()
        other_query_ids: set[int] = set()
        fresh_product_ids: list[int] = []
        for job_id, store in jobs.items():
            job = finished.get(job_id)
            if job is not None and job.status == "completed":
                scraped_ids.add(store.id)
                # A deduplicated job may have been scraping another term
                if job.payload.get("query", "").lower() != query.lower():
                    other_query_ids.add(store.id)
                    continue
                for product_id in (job.result or {}).get("product_ids", []):
                    if product_id not in fresh_product_ids:
                        fresh_product_ids.append(product_id)
            else:
                may_be_incomplete = True

        stores_by_id = {s.id: s for s in stores}
        stale_ids = {s.id for s in partition.skipped + unscrapable} | {
            s.id for s in to_scrape if s.id not in scraped_ids
        }
        cached_ids = {s.id for s in partition.fresh} | stale_ids | other_query_ids

        async with self.session_factory() as db:
            fresh_products = await self._load_products(
                db, stores_by_id, scraped_ids, product_ids=fresh_product_ids
            )
            cached_products = await self._load_products(
                db, stores_by_id, cached_ids, name_term=query, stale_ids=stale_ids
            )

        merged = merge_products(fresh_products, cached_products)
        result = SearchResult(
            products=merged[:limit],
            fresh_data=len(scraped_ids) > 0,
            cache_hit=len(partition.fresh) > 0,
            stores_searched=len(stores),
            stores_scraped=len(scraped_ids),
            may_be_incomplete=may_be_incomplete,
            total_found=len(merged),
            search_term=query,
        )

        outcome = "incomplete" if may_be_incomplete else "ok"
        metrics.search_requests_total.labels(outcome=outcome).inc()
        logger.info(
            f"Search '{query}' near {zip_code}: {result.total_found} products, "
            f"{result.stores_scraped}/{result.stores_searched} stores scraped, "
            f"{len(partition.fresh)} from cache in {time.monotonic() - started:.2f}s"
        )
        return result

    async def _submit_scrapes(
        self, stores: Sequence[StoreRecord], query: str, limit: int
    ) -> dict[str, StoreRecord]:
        """Enqueue one store-search job per store; enqueue failures only degrade the result."""
        jobs: dict[str, StoreRecord] = {}
        for store in stores:
            try:
                handle = await self.job_queue.enqueue(
                    store_target(store.id),
                    KIND_STORE_SEARCH,
                    payload={"store_id": store.id, "query": query, "limit": limit},
                    trigger="user_search",
                    priority="high",
                )
            except Exception as e:
                logger.error(f"Could not enqueue scrape for store {store.id}: {e}")
                continue
            jobs[handle.job_id] = store
        return jobs

    async def _load_products(
        self,
        db: AsyncSession,
        stores_by_id: dict[int, StoreRecord],
        store_ids: set[int],
        product_ids: Optional[Sequence[int]] = None,
        name_term: Optional[str] = None,
        stale_ids: Optional[set[int]] = None,
    ) -> list[dict[str, Any]]:
        """Products with their prices at ``store_ids``, grouped per product."""
        if not store_ids or (product_ids is not None and not product_ids):
            return []

        stmt = (
            select(Product, StorePrice)
            .join(StorePrice, StorePrice.product_id == Product.id)
            .where(StorePrice.store_id.in_(store_ids))
            .order_by(Product.name, Product.id, StorePrice.price)
        )
        if product_ids is not None:
            stmt = stmt.where(Product.id.in_(product_ids))
        if name_term:
            pattern = "%" + re.sub(r"([\\%_])", r"\\\1", name_term) + "%"
            stmt = stmt.where(Product.name.ilike(pattern, escape="\\"))

        result = await db.execute(stmt)
        stale_ids = stale_ids or set()
        grouped: dict[int, dict[str, Any]] = {}
        for product, price in result.all():
            entry = grouped.get(product.id)
            if entry is None:
                entry = grouped[product.id] = product_to_dict(product, fresh=product_ids is not None)
            store = stores_by_id.get(price.store_id)
            entry["store_prices"].append(
                {
                    "store_id": price.store_id,
                    "chain": store.chain_name if store else None,
                    "store_name": store.store_name if store else None,
                    "distance": store.distance if store else None,
                    "price": float(price.price),
                    "deal_type": price.deal_type,
                    "last_updated": price.last_updated.isoformat() if price.last_updated else None,
                    "stale": price.store_id in stale_ids,
                }
            )

        if product_ids is not None:
            order = {product_id: i for i, product_id in enumerate(product_ids)}
            return sorted(grouped.values(), key=lambda p: order.get(p["id"], len(order)))
        return list(grouped.values())

    async def record_search_area(self, zip_code: str) -> None:
        """Count organic search activity for a ZIP (feeds the weekly refresh)."""
        now = datetime.utcnow()
        try:
            async with self.session_factory() as db:
                area = await self._get_area(db, zip_code)
                if area is None:
                    db.add(SearchArea(zip_code=zip_code, search_count=1, last_searched_at=now))
                    try:
                        await db.commit()
                        return
                    except IntegrityError:
                        await db.rollback()
                        area = await self._get_area(db, zip_code)
                area.search_count += 1
                area.last_searched_at = now
                await db.commit()
        except Exception as e:
            logger.warning(f"Could not record search activity for {zip_code}: {e}")

    @staticmethod
    async def _get_area(db: AsyncSession, zip_code: str) -> Optional[SearchArea]:
        result = await db.execute(select(SearchArea).where(SearchArea.zip_code == zip_code))
        return result.scalar_one_or_none()


def product_to_dict(product: Product, fresh: bool = False) -> dict[str, Any]:
    return {
        "id": product.id,
        "upc": product.upc,
        "name": product.name,
        "brand": product.brand,
        "size": product.size,
        "category": product.category,
        "image_url": product.image_url,
        "needs_enrichment": product.needs_enrichment,
        "fresh": fresh,
        "store_prices": [],
    }


def merge_products(
    fresh: Sequence[dict[str, Any]], cached: Sequence[dict[str, Any]]
) -> list[dict[str, Any]]:
    """
    Union of fresh and cached product entries, deduplicated by identifier.

    The fresh entry wins; cached prices from stores it does not cover are
    appended to it.
    """
    merged: dict[str, dict[str, Any]] = {}
    for entry in fresh:
        merged.setdefault(entry["upc"], entry)

    for entry in cached:
        existing = merged.get(entry["upc"])
        if existing is None:
            merged[entry["upc"]] = entry
            continue
        covered = {p["store_id"] for p in existing["store_prices"]}
        existing["store_prices"].extend(
            p for p in entry["store_prices"] if p["store_id"] not in covered
        )
    return list(merged.values())
