"""Prometheus metrics for the gateway pipeline."""

from prometheus_client import Counter, Histogram, Info, generate_latest

# --- Metrics ---

CLIENT_INFO = Info("llm_relay", "LLM relay client info")
CLIENT_INFO.info({"version": "0.1.0", "name": "llm_relay"})

DISPATCH_COUNT = Counter(
    "llm_relay_dispatch_total",
    "Total dispatches by request kind and outcome",
    ["kind", "outcome"],
)

DISPATCH_DURATION = Histogram(
    "llm_relay_dispatch_duration_seconds",
    "Dispatch duration in seconds, cache hits included",
    ["kind"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60],
)

CACHE_LOOKUPS = Counter(
    "llm_relay_cache_lookups_total",
    "Response cache lookups",
    ["result"],
)

RETRY_ATTEMPTS = Counter(
    "llm_relay_retry_attempts_total",
    "Retries scheduled after a retryable failure",
)

THROTTLE_WAIT = Histogram(
    "llm_relay_throttle_wait_seconds",
    "Time spent waiting for a rate limit slot",
    buckets=[0.1, 0.5, 1, 5, 10, 30, 60],
)

STREAM_PARSE_ERRORS = Counter(
    "llm_relay_stream_parse_errors_total",
    "Stream records skipped because their payload was not valid JSON",
)


def metrics_text() -> bytes:
    """Render all metrics in the Prometheus exposition format."""
    return generate_latest()
