"""Rate-limited fetcher for retailer sources with typed failures."""

from __future__ import annotations

import logging
import time
from typing import Optional

import httpx

from grocart import metrics
from grocart.ingest.base import FetchRequest, FetchResult
from grocart.ingest.rate_limiter import RateLimiter
from grocart.ingest.sources import SourceConfig, SourceRegistry, source_registry
from grocart.ingest.user_agent_pool import SERVICE_USER_AGENT, UserAgentPool

logger = logging.getLogger(__name__)


class FetchError(RuntimeError):
    """Base class for fetch failures. ``retryable`` tells the job queue what to do."""

    retryable = True

    def __init__(self, message: str, source: str = ""):
        super().__init__(message)
        self.source = source


class FetchNetworkError(FetchError):
    """Connection failure or timeout."""


class FetchStatusError(FetchError):
    """Non-2xx response."""

    def __init__(self, status_code: int, source: str = "", retry_after: Optional[int] = None):
        super().__init__(f"HTTP {status_code}", source)
        self.status_code = status_code
        self.retry_after = retry_after
        self.retryable = status_code >= 500 or status_code == 429


class SuspiciousResponseError(FetchError):
    """Body too small to be real content, usually an anti-bot challenge."""

    def __init__(self, size: int, minimum: int, source: str = ""):
        super().__init__(f"Response body {size} bytes (< {minimum})", source)
        self.size = size
        self.minimum = minimum


def _retry_after(response: httpx.Response) -> Optional[int]:
    value = response.headers.get("Retry-After")
    if value and value.isdigit():
        return int(value)
    return None


class Fetcher:
    """Issues single requests to named sources under per-source rate limits.

    Never retries on its own; callers decide what a failure means.
    """

    def __init__(
        self,
        sources: Optional[SourceRegistry] = None,
        rate_limiter: Optional[RateLimiter] = None,
        user_agents: Optional[UserAgentPool] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the fetcher.

        Args:
            sources: Source registry (defaults to the built-in sources)
            rate_limiter: Rate limiter owned by this fetcher
            user_agents: Rotation pool for bot-sensitive sources
            client: Shared httpx client (created lazily when omitted)
        """
        self.sources = sources or source_registry
        self.rate_limiter = rate_limiter or RateLimiter()
        self.user_agents = user_agents or UserAgentPool()
        self._client = client
        self._owns_client = client is None
        self.request_count = 0

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, request: FetchRequest) -> FetchResult:
        """
        Perform one rate-limited request.

        Args:
            request: Target source, URL, params, headers, cookies and timeout

        Returns:
            FetchResult with the response text

        Raises:
            FetchNetworkError: Connection failure or timeout
            FetchStatusError: Non-2xx status
            SuspiciousResponseError: Body smaller than the source's minimum
        """
        source = self.sources.get(request.source)
        headers = self._build_headers(source, request)
        timeout = request.timeout or source.timeout

        await self.rate_limiter.acquire(source.name, source.min_interval)
        self.request_count += 1

        client = await self._get_client()
        started = time.monotonic()
        try:
            response = await client.get(
                request.url,
                params=request.params or None,
                headers=headers,
                timeout=httpx.Timeout(timeout),
            )
        except httpx.TimeoutException as e:
            self._record_failure(source.name, "timeout")
            raise FetchNetworkError(f"Timeout after {timeout}s: {e}", source.name) from e
        except httpx.RequestError as e:
            self._record_failure(source.name, "network")
            raise FetchNetworkError(f"Network error: {e}", source.name) from e
        finally:
            metrics.source_fetch_duration_seconds.labels(source=source.name).observe(
                time.monotonic() - started
            )

        if not response.is_success:
            self._record_failure(source.name, f"http_{response.status_code}")
            logger.warning(
                f"{source.name} returned HTTP {response.status_code} for {request.url}"
            )
            raise FetchStatusError(
                response.status_code, source.name, retry_after=_retry_after(response)
            )

        body = response.text
        size = len(response.content)
        if size < source.min_response_bytes:
            self._record_failure(source.name, "suspicious")
            logger.warning(
                f"{source.name} returned a suspiciously small body ({size} bytes)"
            )
            raise SuspiciousResponseError(size, source.min_response_bytes, source.name)

        metrics.source_fetches_total.labels(source=source.name, status="success").inc()
        return FetchResult(
            source=source.name,
            url=str(response.url),
            status_code=response.status_code,
            text=body,
            elapsed=time.monotonic() - started,
        )

    def _build_headers(self, source: SourceConfig, request: FetchRequest) -> dict[str, str]:
        if source.rotate_user_agents:
            headers = self.user_agents.get_headers()
        else:
            headers = {"User-Agent": SERVICE_USER_AGENT}
        headers.update(request.headers)
        if request.cookies:
            headers["Cookie"] = "; ".join(f"{k}={v}" for k, v in request.cookies.items())
        return headers

    @staticmethod
    def _record_failure(source: str, error_type: str) -> None:
        metrics.source_fetches_total.labels(source=source, status="error").inc()
        metrics.source_fetch_errors_total.labels(source=source, error_type=error_type).inc()
