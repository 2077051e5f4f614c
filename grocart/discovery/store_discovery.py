"""Cache-first store discovery across chains."""

import logging
from datetime import datetime
from typing import Callable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from grocart import metrics
from grocart.cache.store_cache import StoreCache
from grocart.db.models import Store
from grocart.discovery.locators import (
    DatabaseStoreLocator,
    JsonStoreLocator,
    StoreLocator,
    StoreRecord,
)
from grocart.ingest.http_client import Fetcher
from grocart.ingest.sources import ROLE_LOCATOR, SourceRegistry

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = (
    "store_name", "address", "city", "state", "zip_code", "latitude", "longitude",
)


class StoreDiscovery:
    """
    Resolve the stores within a radius of a ZIP code.

    Each chain is looked up independently: cache first, then its locator.
    A chain whose lookup fails contributes its previously persisted stores
    (if any) and never fails the whole request.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        locators: Sequence[StoreLocator],
        cache: Optional[StoreCache] = None,
    ):
        """
        Initialize store discovery.

        Args:
            session_factory: Callable returning a new AsyncSession
            locators: One locator per supported chain
            cache: Store cache (defaults to Redis at settings.redis_url)
        """
        self.session_factory = session_factory
        self.locators = list(locators)
        self.cache = cache or StoreCache()

    @property
    def chains(self) -> list[str]:
        return [locator.chain for locator in self.locators]

    async def discover_stores(
        self,
        zip_code: str,
        radius: float,
        chains: Optional[Sequence[str]] = None,
        origin: Optional[tuple[float, float]] = None,
    ) -> list[StoreRecord]:
        """
        Union of every chain's stores near ``zip_code``, deduplicated by
        (chain, external store id).

        Args:
            zip_code: 5-digit ZIP
            radius: Radius in miles
            chains: Restrict to these chains (default: all)
            origin: Known (lat, lon) of the searcher, if any

        Returns:
            StoreRecords, nearest first where distances are known
        """
        wanted = {c.lower() for c in chains} if chains else None
        combined: dict[tuple[str, str], StoreRecord] = {}

        for locator in self.locators:
            if wanted is not None and locator.chain.lower() not in wanted:
                continue
            for store in await self.discover_chain(locator, zip_code, radius, origin):
                combined.setdefault(store.key, store)

        stores = sorted(
            combined.values(),
            key=lambda s: (s.distance is None, s.distance or 0.0, s.chain_name, s.external_store_id),
        )
        logger.info(f"Discovered {len(stores)} stores within {radius} mi of {zip_code}")
        return stores

    async def discover_chain(
        self,
        locator: StoreLocator,
        zip_code: str,
        radius: float,
        origin: Optional[tuple[float, float]] = None,
    ) -> list[StoreRecord]:
        """One chain's stores; never raises."""
        cached = await self.cache.get(locator.chain, zip_code, radius)
        if cached is not None:
            logger.debug(f"Store cache hit for {locator.chain} {zip_code}")
            return [StoreRecord.from_dict(item) for item in cached]

        try:
            async with self.session_factory() as db:
                if isinstance(locator, DatabaseStoreLocator):
                    return await locator.find(db, zip_code, radius, origin)

                candidates = await locator.locate(zip_code, radius)
                stores = await self.upsert_stores(db, candidates)
        except Exception as e:
            metrics.store_discovery_failures_total.labels(chain=locator.chain).inc()
            logger.warning(f"{locator.chain} store discovery failed for {zip_code}: {e}")
            return await self._fallback(locator.chain, zip_code, radius, origin)

        if stores:
            await self.cache.set(
                locator.chain, zip_code, radius, [s.to_dict() for s in stores]
            )
        return stores

    async def _fallback(
        self,
        chain: str,
        zip_code: str,
        radius: float,
        origin: Optional[tuple[float, float]],
    ) -> list[StoreRecord]:
        try:
            async with self.session_factory() as db:
                return await DatabaseStoreLocator(chain).find(db, zip_code, radius, origin)
        except Exception as e:
            logger.error(f"Fallback store lookup failed for {chain} {zip_code}: {e}")
            return []

    async def upsert_stores(
        self,
        db: AsyncSession,
        candidates: Sequence[StoreRecord],
    ) -> list[StoreRecord]:
        """
        Insert new stores and refresh address/coordinates of known ones.

        Keyed on (chain name, external store id). Re-running with identical
        data leaves rows untouched.
        """
        records = []
        created = updated = 0

        for candidate in candidates:
            result = await db.execute(
                select(Store).where(
                    Store.chain_name == candidate.chain_name,
                    Store.external_store_id == candidate.external_store_id,
                )
            )
            store = result.scalar_one_or_none()

            if store is None:
                store = Store(
                    chain_name=candidate.chain_name,
                    external_store_id=candidate.external_store_id,
                    **{f: getattr(candidate, f) for f in _UPDATABLE_FIELDS},
                )
                db.add(store)
                created += 1
            else:
                changed = False
                for field_name in _UPDATABLE_FIELDS:
                    value = getattr(candidate, field_name)
                    if value is not None and getattr(store, field_name) != value:
                        setattr(store, field_name, value)
                        changed = True
                if not store.active:
                    store.active = True
                    changed = True
                if changed:
                    updated += 1

            await db.flush()
            records.append(StoreRecord.from_model(store, candidate.distance))

        await db.commit()
        logger.info(f"Upserted {len(records)} stores ({created} new, {updated} updated)")
        return records

    async def deactivate_store(self, chain: str, external_store_id: str) -> bool:
        """Mark a store inactive. Stores are never deleted."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Store).where(
                    Store.chain_name == chain,
                    Store.external_store_id == external_store_id,
                )
            )
            store = result.scalar_one_or_none()
            if store is None:
                return False
            store.active = False
            store.updated_at = datetime.utcnow()
            await db.commit()
        logger.info(f"Deactivated {chain} store {external_store_id}")
        return True

    async def clear_cache(self, chain: str, zip_code: str, radius: float) -> bool:
        return await self.cache.clear(chain, zip_code, radius)


def default_locators(fetcher: Fetcher, sources: SourceRegistry) -> list[StoreLocator]:
    """Locators for the built-in chains."""
    return [
        JsonStoreLocator(
            "Target",
            sources.for_chain("Target", ROLE_LOCATOR),
            fetcher,
            items_path="data.nearby_stores.stores",
            fields={
                "external_store_id": "store_id",
                "store_name": "location_name",
                "address": "mailing_address.address_line1",
                "city": "mailing_address.city",
                "state": "mailing_address.region",
                "zip_code": "mailing_address.postal_code",
                "latitude": ["geographic_specifications.latitude", "latitude"],
                "longitude": ["geographic_specifications.longitude", "longitude"],
                "distance": "distance",
            },
        ),
        DatabaseStoreLocator("ShopRite"),
    ]
