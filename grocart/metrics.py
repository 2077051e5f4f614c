"""Prometheus metrics for the discovery pipeline."""

from prometheus_client import Counter, Gauge, Histogram, Info

app_info = Info("grocart", "MyGroCart discovery service info")
app_info.info({"version": "0.1.0", "name": "grocart"})

# Fetch metrics
source_fetches_total = Counter(
    "source_fetches_total",
    "Total number of outbound fetches to retailer sources",
    ["source", "status"],
)

source_fetch_errors_total = Counter(
    "source_fetch_errors_total",
    "Total number of failed fetches",
    ["source", "error_type"],
)

source_fetch_duration_seconds = Histogram(
    "source_fetch_duration_seconds",
    "Time spent fetching from retailer sources",
    ["source"],
    buckets=[0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

rate_limit_wait_seconds = Histogram(
    "rate_limit_wait_seconds",
    "Time spent waiting on per-source rate limits",
    ["source"],
    buckets=[0.0, 0.1, 0.5, 1.0, 5.0, 10.0, 15.0, 30.0],
)

# Extraction / matching
products_extracted_total = Counter(
    "products_extracted_total",
    "Products produced by extractors",
    ["source"],
)

matcher_decisions_total = Counter(
    "matcher_decisions_total",
    "Product matcher outcomes",
    ["outcome"],  # identifier, fuzzy, new
)

store_prices_written_total = Counter(
    "store_prices_written_total",
    "Store price rows inserted or overwritten",
    ["chain"],
)

# Store discovery cache
store_cache_requests_total = Counter(
    "store_cache_requests_total",
    "Store discovery cache lookups",
    ["result"],  # hit, miss, error
)

store_discovery_failures_total = Counter(
    "store_discovery_failures_total",
    "Chain-level store discovery failures",
    ["chain"],
)

# Job queue
scrape_jobs_total = Counter(
    "scrape_jobs_total",
    "Scrape jobs by lifecycle event",
    ["kind", "event"],  # enqueued, deduplicated, completed, retried, failed
)

scrape_job_duration_seconds = Histogram(
    "scrape_job_duration_seconds",
    "Scrape job execution time",
    ["kind"],
    buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 900.0],
)

scrape_queue_depth = Gauge(
    "scrape_queue_depth",
    "Scrape jobs currently waiting",
)

# Search
search_requests_total = Counter(
    "search_requests_total",
    "Search requests by outcome",
    ["outcome"],  # cached, scraped, mixed, no_stores, invalid
)

search_stores_partition_total = Counter(
    "search_stores_partition_total",
    "Per-store freshness decisions made during searches",
    ["decision"],
)
