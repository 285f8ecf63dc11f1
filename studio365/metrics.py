"""Metrics facade.

Service code should ONLY call the semantic helpers here so the Prometheus
registry stays an implementation detail.

Metrics:
- m365_token_requests_total          Token endpoint calls by grant type and outcome
- m365_token_cache_lookups_total     In-memory access token cache hits/misses
- m365_graph_requests_total          Graph calls by outcome
- m365_forced_refresh_retries_total  Graph 401/403 answered with a forced refresh
- m365_token_request_latency_seconds Token endpoint round-trip latency
"""

from __future__ import annotations

import logging

from prometheus_client import Counter, Histogram

logger = logging.getLogger("metrics")

_TOKEN_REQUESTS = Counter(
    "m365_token_requests_total",
    "Microsoft identity platform token endpoint requests",
    ["grant_type", "outcome"],
)
_TOKEN_REQUEST_LATENCY = Histogram(
    "m365_token_request_latency_seconds",
    "Latency of token endpoint requests",
    ["grant_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
_CACHE_LOOKUPS = Counter(
    "m365_token_cache_lookups_total",
    "Access token cache lookups",
    ["result"],
)
_GRAPH_REQUESTS = Counter(
    "m365_graph_requests_total",
    "Microsoft Graph requests",
    ["outcome"],
)
_FORCED_REFRESH_RETRIES = Counter(
    "m365_forced_refresh_retries_total",
    "Graph authorization failures retried after a forced token refresh",
)


def token_request(grant_type: str, outcome: str, latency_seconds: float | None = None) -> None:
    _TOKEN_REQUESTS.labels(grant_type=grant_type, outcome=outcome).inc()
    if latency_seconds is not None:
        _TOKEN_REQUEST_LATENCY.labels(grant_type=grant_type).observe(latency_seconds)


def cache_hit() -> None:
    _CACHE_LOOKUPS.labels(result="hit").inc()


def cache_miss() -> None:
    _CACHE_LOOKUPS.labels(result="miss").inc()


def graph_request(outcome: str) -> None:
    _GRAPH_REQUESTS.labels(outcome=outcome).inc()


def forced_refresh_retry() -> None:
    _FORCED_REFRESH_RETRIES.inc()
    logger.debug("metric m365_forced_refresh_retries_total += 1")
