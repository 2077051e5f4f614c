"""Retailer source definitions and the registry that resolves them.

A source is a named remote endpoint with its own rate limit, timeout and
request template. Request templates are rendered with ``str.format`` against a
context (query, store_external_id, zip_code, radius, limit, api_key,
visitor_id), so adding a chain is a data change rather than new fetch code.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import uuid4

from grocart.config import settings
from grocart.ingest.base import FetchRequest

logger = logging.getLogger(__name__)

ROLE_SEARCH = "search"
ROLE_LOCATOR = "locator"


class UnknownSourceError(KeyError):
    """Raised when a source or chain has no registered definition."""

    retryable = False


@dataclass(frozen=True)
class SourceConfig:
    """Per-source request policy and template."""

    name: str
    chain: str
    role: str
    url: str
    min_interval: float
    timeout: float
    payload: str = "json"  # "json" or "html"
    rotate_user_agents: bool = False
    min_response_bytes: int = 200
    params: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    cookies: dict[str, str] = field(default_factory=dict)

    def build_request(self, context: dict[str, Any]) -> FetchRequest:
        """Render the URL, params, headers and cookies for one call."""
        values = {"api_key": settings.target_api_key, "visitor_id": uuid4().hex.upper()}
        values.update({k: v for k, v in context.items() if v is not None})

        return FetchRequest(
            source=self.name,
            url=self.url.format(**values),
            params={k: str(v).format(**values) for k, v in self.params.items()},
            headers={k: str(v).format(**values) for k, v in self.headers.items()},
            cookies={k: str(v).format(**values) for k, v in self.cookies.items()},
            timeout=self.timeout,
        )


class SourceRegistry:
    """Lookup of sources by name and by (chain, role)."""

    def __init__(self, sources: Optional[list[SourceConfig]] = None):
        self._sources: dict[str, SourceConfig] = {}
        for source in sources or []:
            self.register(source)

    def register(self, source: SourceConfig) -> None:
        self._sources[source.name] = source

    def get(self, name: str) -> SourceConfig:
        try:
            return self._sources[name]
        except KeyError:
            raise UnknownSourceError(f"Unknown source: {name}") from None

    def for_chain(self, chain: str, role: str = ROLE_SEARCH) -> SourceConfig:
        chain_key = chain.lower()
        for source in self._sources.values():
            if source.chain.lower() == chain_key and source.role == role:
                return source
        raise UnknownSourceError(f"No {role} source for chain {chain}")

    def has_chain(self, chain: str, role: str = ROLE_SEARCH) -> bool:
        try:
            self.for_chain(chain, role)
            return True
        except UnknownSourceError:
            return False

    def chains(self) -> list[str]:
        return sorted({source.chain for source in self._sources.values()})

    def list_sources(self) -> list[str]:
        return sorted(self._sources)


REDSKY_BASE = "https://redsky.target.com/redsky_aggregations/v1/web"


def default_sources() -> list[SourceConfig]:
    """Built-in source definitions."""
    return [
        SourceConfig(
            name="target_search",
            chain="Target",
            role=ROLE_SEARCH,
            url=f"{REDSKY_BASE}/plp_search_v2",
            min_interval=settings.target_min_interval,
            timeout=settings.target_timeout,
            min_response_bytes=settings.min_response_bytes,
            params={
                "keyword": "{query}",
                "pricing_store_id": "{store_external_id}",
                "store_ids": "{store_external_id}",
                "visitor_id": "{visitor_id}",
                "page": "/s/{query}",
                "key": "{api_key}",
                "channel": "WEB",
                "count": "{limit}",
                "offset": "0",
                "default_purchasability_filter": "true",
            },
            headers={"Accept": "application/json"},
        ),
        SourceConfig(
            name="target_locator",
            chain="Target",
            role=ROLE_LOCATOR,
            url=f"{REDSKY_BASE}/nearby_stores_v1",
            min_interval=settings.target_min_interval,
            timeout=settings.target_timeout,
            min_response_bytes=20,
            params={
                "place": "{zip_code}",
                "within": "{radius}",
                "limit": "20",
                "key": "{api_key}",
                "visitor_id": "{visitor_id}",
                "channel": "WEB",
                "page": "/store-locator/find-stores",
            },
            headers={"Accept": "application/json"},
        ),
        SourceConfig(
            name="shoprite_search",
            chain="ShopRite",
            role=ROLE_SEARCH,
            url="https://www.shoprite.com/sm/pickup/rsid/{store_external_id}/results",
            min_interval=settings.shoprite_min_interval,
            timeout=settings.shoprite_timeout,
            payload="html",
            rotate_user_agents=True,
            min_response_bytes=settings.min_response_bytes,
            params={"q": "{query}"},
            cookies={
                "MI9_RSID": "{store_external_id}",
                "MI9_SHOPPING_MODE": "pickup",
                "MI9_ZIPCODE": "{zip_code}",
            },
        ),
    ]


# Global source registry
source_registry = SourceRegistry(default_sources())
