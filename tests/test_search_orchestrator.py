"""End-to-end search: discovery, freshness, queued scrapes and the cached catalog."""

import asyncio
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import select, update

from grocart.config import settings
from grocart.db.models import SearchArea, Store, StorePrice
from grocart.search.orchestrator import (
    NO_STORES_MESSAGE,
    InvalidSearchRequest,
    merge_products,
)

from helpers import (
    SHOPRITE_SEARCH_PATH,
    TARGET_LOCATOR_PATH,
    TARGET_SEARCH_PATH,
    target_stores_body,
)


@pytest_asyncio.fixture
async def services(make_services):
    built = make_services()
    await built.start()
    return built


def by_name(result):
    return {p["name"]: p for p in result.products}


class TestSearchOrchestrator:
    @pytest.mark.asyncio
    async def test_first_search_scrapes_every_store(self, services, retailer):
        result = await services.orchestrator.search("milk", "07001", radius=10)

        assert result.fresh_data is True
        assert result.cache_hit is False
        assert result.stores_searched == 3
        assert result.stores_scraped == 3
        assert result.may_be_incomplete is False
        assert result.total_found == 3
        assert result.search_term == "milk"
        assert retailer.calls(TARGET_LOCATOR_PATH) == 1
        assert retailer.calls(TARGET_SEARCH_PATH) == 2
        assert retailer.calls(SHOPRITE_SEARCH_PATH) == 1

        products = by_name(result)
        whole = products["Whole Milk 1 gal"]
        assert whole["upc"] == "012345678905"
        assert whole["fresh"] is True
        assert sorted(p["chain"] for p in whole["store_prices"]) == ["Target", "Target"]
        assert all(p["price"] == 3.49 for p in whole["store_prices"])
        shoprite = products["ShopRite Skim Milk Gallon"]
        assert [p["price"] for p in shoprite["store_prices"]] == [2.99]
        assert shoprite["store_prices"][0]["stale"] is False

    @pytest.mark.asyncio
    async def test_repeat_search_is_served_from_cache(self, services, retailer):
        await services.orchestrator.search("milk", "07001", radius=10)
        result = await services.orchestrator.search("milk", "07001", radius=10)

        assert result.fresh_data is False
        assert result.cache_hit is True
        assert result.stores_scraped == 0
        assert result.stores_searched == 3
        assert result.total_found == 3
        # No new retailer traffic, store list came from the cache too
        assert retailer.calls(TARGET_LOCATOR_PATH) == 1
        assert retailer.calls(TARGET_SEARCH_PATH) == 2
        assert retailer.calls(SHOPRITE_SEARCH_PATH) == 1
        assert all(p["fresh"] is False for p in result.products)

    @pytest.mark.asyncio
    async def test_force_refresh_scrapes_fresh_stores(self, services, retailer):
        await services.orchestrator.search("milk", "07001", radius=10)
        result = await services.orchestrator.search("milk", "07001", radius=10, force_refresh=True)

        assert result.fresh_data is True
        assert result.stores_scraped == 3
        assert retailer.calls(TARGET_SEARCH_PATH) == 4
        assert retailer.calls(SHOPRITE_SEARCH_PATH) == 2

    @pytest.mark.asyncio
    async def test_cooling_down_stores_are_served_stale(self, services, retailer, session_factory):
        await services.orchestrator.search("milk", "07001", radius=10)
        async with session_factory() as db:
            await db.execute(
                update(StorePrice).values(last_updated=datetime.utcnow() - timedelta(days=2))
            )
            await db.commit()

        result = await services.orchestrator.search("milk", "07001", radius=10)

        assert result.stores_scraped == 0
        assert result.fresh_data is False
        assert result.cache_hit is False
        assert result.total_found == 3
        assert retailer.calls(TARGET_SEARCH_PATH) == 2
        assert all(p["stale"] for product in result.products for p in product["store_prices"])

    @pytest.mark.asyncio
    async def test_mixed_fresh_and_cooling_down_stores(self, services, retailer, session_factory):
        await services.orchestrator.search("milk", "07001", radius=10)
        now = datetime.utcnow()
        async with session_factory() as db:
            shoprite_id = await db.scalar(select(Store.id).where(Store.chain_name == "ShopRite"))
            await db.execute(
                update(StorePrice)
                .where(StorePrice.store_id != shoprite_id)
                .values(last_updated=now - timedelta(hours=2))
            )
            await db.execute(
                update(StorePrice)
                .where(StorePrice.store_id == shoprite_id)
                .values(last_updated=now - timedelta(hours=48), created_at=now - timedelta(minutes=10))
            )
            await db.commit()

        result = await services.orchestrator.search("milk", "07001", radius=10)

        assert result.stores_scraped == 0
        assert result.cache_hit is True
        assert result.fresh_data is False
        assert result.total_found == 3
        assert retailer.calls(TARGET_SEARCH_PATH) == 2
        assert retailer.calls(SHOPRITE_SEARCH_PATH) == 1
        stale_flags = {
            price["chain"]: price["stale"]
            for product in result.products
            for price in product["store_prices"]
        }
        assert stale_flags == {"Target": False, "ShopRite": True}

    @pytest.mark.asyncio
    async def test_concurrent_searches_share_one_job_per_store(self, services, retailer, monkeypatch):
        await services.store_discovery.discover_stores("07001", 10)
        queue = services.job_queue
        handles = []
        all_enqueued = asyncio.Event()
        enqueue = queue.enqueue
        handle_job = queue._handler

        async def recording_enqueue(*args, **kwargs):
            handle = await enqueue(*args, **kwargs)
            handles.append(handle)
            if len(handles) == 6:
                all_enqueued.set()
            return handle

        async def held_until_both_enqueued(job):
            await all_enqueued.wait()
            return await handle_job(job)

        monkeypatch.setattr(queue, "enqueue", recording_enqueue)
        queue.set_handler(held_until_both_enqueued)

        first, second = await asyncio.gather(
            services.orchestrator.search("milk", "07001", radius=10),
            services.orchestrator.search("milk", "07001", radius=10),
        )

        assert len(handles) == 6
        assert sum(handle.created for handle in handles) == 3
        assert len({handle.job_id for handle in handles}) == 3
        assert retailer.calls(TARGET_SEARCH_PATH) == 2
        assert retailer.calls(SHOPRITE_SEARCH_PATH) == 1
        assert first.stores_scraped == second.stores_scraped == 3
        assert first.total_found == second.total_found == 3

    @pytest.mark.asyncio
    async def test_failed_store_marks_result_incomplete(self, services, retailer):
        retailer.add(SHOPRITE_SEARCH_PATH, status_code=503, text="Service Unavailable")

        result = await services.orchestrator.search("milk", "07001", radius=10)

        assert result.may_be_incomplete is True
        assert result.stores_scraped == 2
        assert "ShopRite Skim Milk Gallon" not in by_name(result)
        assert retailer.calls(SHOPRITE_SEARCH_PATH) == settings.queue_max_attempts
        status = await services.job_queue.get_status()
        assert status["counts"]["failed"] == 1

    @pytest.mark.asyncio
    async def test_limit_truncates_products(self, services):
        result = await services.orchestrator.search("milk", "07001", radius=10, limit=2)

        assert len(result.products) == 2
        assert result.total_found == 3

    @pytest.mark.asyncio
    async def test_no_stores_in_area(self, services, retailer):
        retailer.add(TARGET_LOCATOR_PATH, json_body=target_stores_body())

        result = await services.orchestrator.search("milk", "99501", radius=5)

        assert result.products == []
        assert result.message == NO_STORES_MESSAGE
        assert result.stores_searched == 0
        assert retailer.calls(TARGET_SEARCH_PATH) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "query,zip_code,radius,limit",
        [
            ("", "07001", 10, 20),
            ("   ", "07001", 10, 20),
            ("m" * 101, "07001", 10, 20),
            ("milk", "0700", 10, 20),
            ("milk", "07001-1234", 10, 20),
            ("milk", "07001", 0, 20),
            ("milk", "07001", 101, 20),
            ("milk", "07001", 10, 0),
            ("milk", "07001", 10, 101),
        ],
    )
    async def test_invalid_input_is_rejected_before_any_work(
        self, services, retailer, query, zip_code, radius, limit
    ):
        with pytest.raises(InvalidSearchRequest):
            await services.orchestrator.search(query, zip_code, radius=radius, limit=limit)

        assert retailer.requests == []
        status = await services.job_queue.get_status()
        assert status["counts"]["waiting"] == 0

    @pytest.mark.asyncio
    async def test_search_activity_is_recorded(self, services, session_factory):
        await services.orchestrator.search("milk", "07001", radius=10)
        await services.orchestrator.search("eggs", "07001", radius=10)

        async with session_factory() as db:
            area = (await db.execute(select(SearchArea))).scalar_one()
        assert area.zip_code == "07001"
        assert area.search_count == 2


def test_merge_prefers_fresh_entry_and_appends_other_stores():
    fresh = [
        {"upc": "A", "name": "Milk", "fresh": True, "store_prices": [{"store_id": 1, "price": 3.0}]},
    ]
    cached = [
        {"upc": "A", "name": "Milk (old)", "fresh": False, "store_prices": [
            {"store_id": 1, "price": 3.5},
            {"store_id": 2, "price": 3.2},
        ]},
        {"upc": "B", "name": "Bread", "fresh": False, "store_prices": [{"store_id": 2, "price": 2.0}]},
    ]

    merged = merge_products(fresh, cached)

    assert [p["upc"] for p in merged] == ["A", "B"]
    assert merged[0]["name"] == "Milk"
    assert merged[0]["store_prices"] == [
        {"store_id": 1, "price": 3.0},
        {"store_id": 2, "price": 3.2},
    ]
