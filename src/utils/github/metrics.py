from prometheus_client import Counter, Gauge

# Prometheus metrics for the GitHub access layer. Exposed by the remote
# server's /metrics app alongside the connection metrics.
api_requests_total = Counter(
    "github_api_requests_total",
    "Outbound GitHub API attempts",
    ["surface", "outcome"],
)
api_retries_total = Counter(
    "github_api_retries_total",
    "Retries scheduled by the request executor",
    ["surface", "reason"],
)
rate_limit_remaining = Gauge(
    "github_rate_limit_remaining",
    "Most recently observed remaining quota",
    ["surface"],
)
cache_events_total = Counter(
    "github_cache_events_total",
    "Cache hits, misses, sets, deletes and evictions",
    ["event"],
)
