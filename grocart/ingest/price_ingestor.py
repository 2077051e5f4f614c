"""Persist one scrape batch of products and prices atomically."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from grocart import metrics
from grocart.db.models import Product, Store, StorePrice
from grocart.ingest.base import RawProduct
from grocart.match.product_matcher import ProductMatcher, product_matcher

logger = logging.getLogger(__name__)

_BACKFILL_FIELDS = ("brand", "size", "category", "image_url")

# INSERT .. ON CONFLICT flavours for the supported databases
_DIALECT_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


def _insert(db: AsyncSession, model):
    return _DIALECT_INSERTS[db.get_bind().dialect.name](model)


@dataclass
class IngestResult:
    """Counters for one ingested batch."""

    processed: int = 0
    created: int = 0
    updated: int = 0
    matched: int = 0
    prices_written: int = 0
    skipped_no_price: int = 0
    product_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "matched": self.matched,
            "prices_written": self.prices_written,
            "skipped_no_price": self.skipped_no_price,
            "product_ids": list(self.product_ids),
        }


class PriceIngestor:
    """Match, upsert and price a batch of extracted products for one store."""

    def __init__(self, matcher: Optional[ProductMatcher] = None):
        self.matcher = matcher or product_matcher

    async def ingest_batch(
        self,
        db: AsyncSession,
        store: Store,
        products: Sequence[RawProduct],
        now: Optional[datetime] = None,
    ) -> IngestResult:
        """
        Upsert products and their StorePrice rows in a single transaction.

        Either every price in the batch is written or none is.

        Args:
            db: Database session (committed on success, rolled back on error)
            store: Store the prices were observed at
            products: Extracted products
            now: Observation timestamp (defaults to utcnow)

        Returns:
            IngestResult with counters and the touched product ids
        """
        now = now or datetime.utcnow()
        result = IngestResult()
        # Read before any rollback expires the instance
        chain, store_label = store.chain_name, f"{store.chain_name} {store.external_store_id}"

        try:
            for raw in products:
                result.processed += 1
                product = await self._upsert_product(db, raw, result)

                if product.id not in result.product_ids:
                    result.product_ids.append(product.id)

                if raw.price is None:
                    result.skipped_no_price += 1
                    continue

                await self.upsert_price(db, product, store, raw, now)
                result.prices_written += 1

            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception(
                f"Batch ingestion failed for store {store_label}; rolled back"
            )
            raise

        metrics.store_prices_written_total.labels(chain=chain).inc(result.prices_written)
        logger.info(
            f"Ingested {result.processed} products for {store_label}: "
            f"{result.created} new, {result.matched} matched, {result.prices_written} prices"
        )
        return result

    async def _upsert_product(
        self,
        db: AsyncSession,
        raw: RawProduct,
        result: IngestResult,
    ) -> Product:
        match = await self.matcher.find_match(db, raw)

        if match.product is None:
            product, created = await self._insert_product(db, raw)
            if created:
                result.created += 1
                return product
            # Another batch created it between the match and the insert
            logger.debug(f"Product {raw.identifier} already exists; reusing it")
        else:
            product = match.product
            if match.method == "fuzzy":
                result.matched += 1

        changed = False
        for field_name in _BACKFILL_FIELDS:
            incoming = getattr(raw, field_name)
            if incoming and not getattr(product, field_name):
                setattr(product, field_name, incoming)
                changed = True
        if changed:
            result.updated += 1
        return product

    async def _insert_product(self, db: AsyncSession, raw: RawProduct) -> tuple[Product, bool]:
        """Insert unless the identifier exists; returns (product, created)."""
        inserted = await db.execute(
            _insert(db, Product)
            .values(
                upc=raw.identifier,
                name=raw.name,
                brand=raw.brand,
                size=raw.size,
                category=raw.category,
                image_url=raw.image_url,
                needs_enrichment=raw.needs_enrichment,
                discovery_count=0,
            )
            .on_conflict_do_nothing(index_elements=["upc"])
            .returning(Product.id)
        )
        created = inserted.scalar_one_or_none() is not None
        existing = await db.execute(select(Product).where(Product.upc == raw.identifier))
        return existing.scalar_one(), created

    async def upsert_price(
        self,
        db: AsyncSession,
        product: Product,
        store: Store,
        raw: RawProduct,
        now: datetime,
    ) -> None:
        """
        Insert or overwrite the single current price for (product, store).

        Concurrent writers for the same pair resolve last-writer-wins. The
        product's discovery count grows only when the pair is new.
        """
        observed = {"price": raw.price, "deal_type": raw.deal_type, "last_updated": now}
        inserted = await db.execute(
            _insert(db, StorePrice)
            .values(product_id=product.id, store_id=store.id, created_at=now, **observed)
            .on_conflict_do_nothing(index_elements=["product_id", "store_id"])
            .returning(StorePrice.id)
        )

        if inserted.scalar_one_or_none() is None:
            await db.execute(
                update(StorePrice)
                .where(StorePrice.product_id == product.id, StorePrice.store_id == store.id)
                .values(**observed)
                .execution_options(synchronize_session=False)
            )
        else:
            count = await db.scalar(
                update(Product)
                .where(Product.id == product.id)
                .values(discovery_count=Product.discovery_count + 1)
                .returning(Product.discovery_count)
                .execution_options(synchronize_session=False)
            )
            set_committed_value(product, "discovery_count", count)

        product.last_price_update = now
        await db.flush()


# Global ingestor instance
price_ingestor = PriceIngestor()
