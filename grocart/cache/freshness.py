"""Per-store price freshness and scrape cooldown decisions."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from grocart import metrics
from grocart.config import settings
from grocart.db.models import Store, StorePrice
from grocart.discovery.locators import StoreRecord

logger = logging.getLogger(__name__)


class FreshnessDecision(str, Enum):
    """What to do with one store for one search."""

    FRESH = "fresh"  # serve from cache
    SCRAPE = "scrape"  # stale and past cooldown
    SKIP = "skip"  # stale but still cooling down


@dataclass
class StorePartition:
    """Stores of one search split by freshness decision."""

    fresh: list[StoreRecord] = field(default_factory=list)
    scrape: list[StoreRecord] = field(default_factory=list)
    skipped: list[StoreRecord] = field(default_factory=list)


class FreshnessTracker:
    """
    Decides whether a store's persisted prices can be served as-is.

    Fresh: any StorePrice for the store updated within the freshness window.
    Cooldown: any StorePrice for the store *created* within the cooldown
    window blocks another scrape, even when the data is stale.
    """

    def __init__(
        self,
        freshness_window: Optional[timedelta] = None,
        cooldown_window: Optional[timedelta] = None,
    ):
        self.freshness_window = freshness_window or timedelta(hours=settings.freshness_hours)
        self.cooldown_window = cooldown_window or timedelta(minutes=settings.cooldown_minutes)

    async def has_fresh_prices(
        self, db: AsyncSession, store_id: int, now: Optional[datetime] = None
    ) -> bool:
        threshold = (now or datetime.utcnow()) - self.freshness_window
        result = await db.execute(
            select(StorePrice.id)
            .where(StorePrice.store_id == store_id, StorePrice.last_updated >= threshold)
            .limit(1)
        )
        return result.first() is not None

    async def in_cooldown(
        self, db: AsyncSession, store_id: int, now: Optional[datetime] = None
    ) -> bool:
        threshold = (now or datetime.utcnow()) - self.cooldown_window
        result = await db.execute(
            select(StorePrice.id)
            .where(StorePrice.store_id == store_id, StorePrice.created_at >= threshold)
            .limit(1)
        )
        return result.first() is not None

    async def evaluate(
        self,
        db: AsyncSession,
        store_id: int,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> FreshnessDecision:
        """
        Decide how to handle one store.

        Args:
            db: Database session
            store_id: Internal store id
            force: Bypass both freshness and cooldown (explicit refresh)
            now: Reference time (defaults to utcnow)
        """
        if force:
            return FreshnessDecision.SCRAPE
        if await self.has_fresh_prices(db, store_id, now):
            return FreshnessDecision.FRESH
        if await self.in_cooldown(db, store_id, now):
            return FreshnessDecision.SKIP
        return FreshnessDecision.SCRAPE

    async def partition(
        self,
        db: AsyncSession,
        stores: Sequence[StoreRecord],
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> StorePartition:
        """Evaluate every store once for the current search."""
        partition = StorePartition()
        for store in stores:
            decision = await self.evaluate(db, store.id, force=force, now=now)
            metrics.search_stores_partition_total.labels(decision=decision.value).inc()
            if decision is FreshnessDecision.FRESH:
                partition.fresh.append(store)
            elif decision is FreshnessDecision.SKIP:
                partition.skipped.append(store)
            else:
                partition.scrape.append(store)

        logger.info(
            f"Freshness: {len(partition.fresh)} fresh, {len(partition.scrape)} to scrape, "
            f"{len(partition.skipped)} cooling down"
        )
        return partition

    async def get_stores_needing_refresh(
        self,
        db: AsyncSession,
        days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> list[StoreRecord]:
        """Active stores that have had prices in the last ``days`` days (popular stores)."""
        since = (now or datetime.utcnow()) - timedelta(days=days or settings.stale_refresh_days)
        result = await db.execute(
            select(Store)
            .join(StorePrice, StorePrice.store_id == Store.id)
            .where(Store.active.is_(True), StorePrice.last_updated >= since)
            .distinct()
            .order_by(Store.id)
        )
        return [StoreRecord.from_model(store) for store in result.scalars().all()]


# Global freshness tracker instance
freshness_tracker = FreshnessTracker()
