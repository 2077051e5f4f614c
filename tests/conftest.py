"""Shared fixtures: file-backed SQLite, fake Redis, canned retailer responses."""

import dataclasses
from typing import Any, Optional

import fakeredis.aioredis
import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from grocart.config import settings
from grocart.db.models import Base
from grocart.ingest.sources import SourceRegistry, default_sources
from grocart.services import build_services

from helpers import (
    SHOPRITE_SEARCH_PATH,
    TARGET_LOCATOR_PATH,
    TARGET_SEARCH_PATH,
    add_store,
    shoprite_page,
    target_product,
    target_search_body,
    target_store,
    target_stores_body,
)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'grocart.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def sources():
    """Built-in sources without rate limiting and with a tiny size floor."""
    return SourceRegistry(
        [
            dataclasses.replace(source, min_interval=0.0, min_response_bytes=10)
            for source in default_sources()
        ]
    )


class FakeRetailer:
    """MockTransport handler routing on URL path fragments, recording every call."""

    def __init__(self):
        self.routes: list[tuple[str, Any]] = []
        self.requests: list[httpx.Request] = []

    def add(
        self,
        path_fragment: str,
        status_code: int = 200,
        json_body: Optional[Any] = None,
        text: Optional[str] = None,
        exc: Optional[Exception] = None,
    ) -> None:
        self.routes.insert(0, (path_fragment, (status_code, json_body, text, exc)))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for fragment, (status_code, json_body, text, exc) in self.routes:
            if fragment in request.url.path:
                if exc is not None:
                    raise exc
                if json_body is not None:
                    return httpx.Response(status_code, json=json_body)
                return httpx.Response(status_code, text=text or "")
        return httpx.Response(404, text="not found")

    def calls(self, path_fragment: str) -> int:
        return sum(1 for r in self.requests if path_fragment in r.url.path)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def retailer():
    return FakeRetailer()



@pytest_asyncio.fixture
async def canned_retailer(session_factory, retailer):
    """Two Target stores from the locator plus one seeded ShopRite store, all near 07001."""
    await add_store(session_factory, "ShopRite", "3000", "07001", lat=40.5800, lon=-74.2800)
    retailer.add(
        TARGET_LOCATOR_PATH,
        json_body=target_stores_body(
            target_store("1001", "07001", 1.2, 40.5820, -74.2710),
            target_store("1002", "07095", 4.5, 40.5530, -74.2850),
        ),
    )
    retailer.add(
        TARGET_SEARCH_PATH,
        json_body=target_search_body(
            target_product("13276131", "Whole Milk 1 gal", 3.49, barcode="012345678905"),
            target_product("54191097", "Organic 2% Reduced Fat Milk Half Gallon", 4.29),
        ),
    )
    retailer.add(
        SHOPRITE_SEARCH_PATH,
        text=shoprite_page(
            [{"name": "ShopRite Skim Milk Gallon", "sku": "041190000001", "price": "$2.99"}]
        ),
    )
    return retailer


@pytest_asyncio.fixture
async def make_services(session_factory, redis_client, sources, canned_retailer, monkeypatch):
    monkeypatch.setattr(settings, "queue_poll_interval_seconds", 0.01)
    built = []

    def _make(**kwargs):
        kwargs.setdefault("wait_seconds", 10)
        kwargs.setdefault("queue_backoff_seconds", 0)
        services = build_services(
            session_factory=session_factory,
            redis_client=redis_client,
            sources=sources,
            http_client=canned_retailer.client(),
            **kwargs,
        )
        built.append(services)
        return services

    yield _make
    for services in built:
        await services.close()
