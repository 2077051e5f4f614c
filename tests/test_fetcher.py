"""Tests for the rate-limited fetcher and source request templates."""

import httpx
import pytest

from grocart.ingest.base import FetchRequest
from grocart.ingest.http_client import (
    Fetcher,
    FetchNetworkError,
    FetchStatusError,
    SuspiciousResponseError,
)
from grocart.ingest.sources import ROLE_LOCATOR, UnknownSourceError
from grocart.ingest.user_agent_pool import SERVICE_USER_AGENT
from helpers import target_product, target_search_body


def target_request(sources, query="milk"):
    return sources.get("target_search").build_request(
        {"query": query, "store_external_id": "1234", "zip_code": "07001", "limit": 20}
    )


@pytest.mark.asyncio
async def test_fetch_success(sources, retailer):
    retailer.add("/plp_search_v2", json_body=target_search_body(target_product("1", "Whole Milk", 3.89)))
    fetcher = Fetcher(sources=sources, client=retailer.client())

    result = await fetcher.fetch(target_request(sources))

    assert result.status_code == 200
    assert result.source == "target_search"
    assert "Whole Milk" in result.text
    assert fetcher.request_count == 1

    sent = retailer.requests[0]
    assert sent.url.params["keyword"] == "milk"
    assert sent.url.params["store_ids"] == "1234"
    assert sent.url.params["count"] == "20"
    assert sent.headers["User-Agent"] == SERVICE_USER_AGENT


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code,retryable",
    [(500, True), (503, True), (429, True), (404, False), (403, False)],
)
async def test_status_errors(sources, retailer, status_code, retryable):
    retailer.add("/plp_search_v2", status_code=status_code, text="x" * 100)
    fetcher = Fetcher(sources=sources, client=retailer.client())

    with pytest.raises(FetchStatusError) as exc_info:
        await fetcher.fetch(target_request(sources))

    assert exc_info.value.status_code == status_code
    assert exc_info.value.retryable is retryable
    assert exc_info.value.source == "target_search"


@pytest.mark.asyncio
async def test_retry_after_is_captured(sources):
    def handler(request):
        return httpx.Response(429, headers={"Retry-After": "30"}, text="slow down")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    fetcher = Fetcher(sources=sources, client=client)

    with pytest.raises(FetchStatusError) as exc_info:
        await fetcher.fetch(target_request(sources))

    assert exc_info.value.retry_after == 30


@pytest.mark.asyncio
async def test_tiny_body_is_suspicious(sources, retailer):
    retailer.add("/plp_search_v2", text="{}")
    fetcher = Fetcher(sources=sources, client=retailer.client())

    with pytest.raises(SuspiciousResponseError) as exc_info:
        await fetcher.fetch(target_request(sources))

    assert exc_info.value.size == 2
    assert exc_info.value.retryable


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        httpx.ConnectError("refused"),
        httpx.ReadTimeout("slow"),
        httpx.TooManyRedirects("redirect loop"),
        httpx.DecodingError("bad gzip stream"),
    ],
)
async def test_transport_failures_become_network_errors(sources, retailer, error):
    retailer.add("/plp_search_v2", exc=error)
    fetcher = Fetcher(sources=sources, client=retailer.client())

    with pytest.raises(FetchNetworkError) as exc_info:
        await fetcher.fetch(target_request(sources))

    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_failed_request_still_consumes_rate_slot(sources, retailer):
    retailer.add("/plp_search_v2", status_code=500, text="x" * 100)
    fetcher = Fetcher(sources=sources, client=retailer.client())

    with pytest.raises(FetchStatusError):
        await fetcher.fetch(target_request(sources))

    assert "target_search" in fetcher.rate_limiter.last_request


@pytest.mark.asyncio
async def test_shoprite_rotates_user_agents_and_sends_cookies(sources, retailer):
    retailer.add("/results", text="<html>" + "x" * 100 + "</html>")
    fetcher = Fetcher(sources=sources, client=retailer.client())
    source = sources.get("shoprite_search")
    context = {"query": "bread", "store_external_id": "3000", "zip_code": "07001", "limit": 20}

    await fetcher.fetch(source.build_request(context))
    await fetcher.fetch(source.build_request(context))

    first, second = retailer.requests
    assert first.url.path == "/sm/pickup/rsid/3000/results"
    assert first.url.params["q"] == "bread"
    assert "MI9_RSID=3000" in first.headers["Cookie"]
    assert "MI9_ZIPCODE=07001" in first.headers["Cookie"]
    assert first.headers["User-Agent"] != second.headers["User-Agent"]


@pytest.mark.asyncio
async def test_unknown_source(sources):
    fetcher = Fetcher(sources=sources, client=httpx.AsyncClient())

    with pytest.raises(UnknownSourceError):
        await fetcher.fetch(FetchRequest(source="nowhere", url="https://example.invalid"))


def test_registry_lookup_by_chain(sources):
    assert sources.for_chain("target").name == "target_search"
    assert sources.for_chain("Target", ROLE_LOCATOR).name == "target_locator"
    assert sources.has_chain("ShopRite")
    assert not sources.has_chain("Wegmans")
    assert sources.chains() == ["ShopRite", "Target"]

    with pytest.raises(UnknownSourceError):
        sources.for_chain("Wegmans")
