from prometheus_client import Counter, Histogram

REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path"],
)
ROUTED_REQUESTS_TOTAL = Counter(
    "routed_requests_total",
    "Total successfully routed requests by provider and complexity",
    ["provider", "complexity"],
)
FALLBACK_TOTAL = Counter(
    "fallback_total",
    "Total fallbacks",
    ["from_provider", "to_provider", "reason"],
)
PROVIDER_ERRORS_TOTAL = Counter(
    "provider_errors_total",
    "Total failed provider attempts",
    ["provider", "kind"],
)
RATE_LIMITED_TOTAL = Counter(
    "rate_limited_total",
    "Total reservations denied by the rate limiter or cost guard",
    ["scope", "reason"],
)
PROVIDER_ATTEMPT_DURATION = Histogram(
    "provider_attempt_duration_seconds",
    "Provider call latency in seconds",
    ["provider"],
)
TOKENS_TOTAL = Counter(
    "tokens_total",
    "Total tokens processed",
    ["provider"],
)
COST_TOTAL = Counter(
    "cost_total",
    "Total cost in USD",
    ["provider"],
)
