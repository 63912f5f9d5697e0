"""Prometheus metrics service for monitoring"""

import asyncio
import time
from collections.abc import Callable
from functools import wraps

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from airouter import __version__

# ============================================================================
# System Metrics
# ============================================================================

system_info = Info("airouter_system", "AI router system information")
system_info.info({"version": __version__, "component": "airouter"})


# ============================================================================
# API Metrics
# ============================================================================

api_requests_total = Counter(
    "airouter_api_requests_total",
    "Total number of API requests",
    ["method", "endpoint", "status"],
)

api_request_duration_seconds = Histogram(
    "airouter_api_request_duration_seconds",
    "API request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

api_active_requests = Gauge(
    "airouter_api_active_requests",
    "Number of active API requests",
    ["method", "endpoint"],
)


# ============================================================================
# Routing Metrics
# ============================================================================

routed_requests_total = Counter(
    "airouter_routed_requests_total",
    "Requests routed to a model tier",
    ["tier", "outcome"],
)

route_duration_seconds = Histogram(
    "airouter_route_duration_seconds",
    "End-to-end routing latency in seconds",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

fallbacks_total = Counter(
    "airouter_fallbacks_total",
    "Requests answered by the fallback tier",
    ["primary_tier", "fallback_tier"],
)

budget_rejections_total = Counter(
    "airouter_budget_rejections_total",
    "Requests rejected by the budget check",
)

response_cache_total = Counter(
    "airouter_response_cache_total",
    "Response cache lookups",
    ["result"],
)


# ============================================================================
# Model Metrics
# ============================================================================

model_calls_total = Counter(
    "airouter_model_calls_total",
    "Model invocations",
    ["tier", "purpose"],
)

model_errors_total = Counter(
    "airouter_model_errors_total",
    "Failed model invocations",
    ["tier", "error_type"],
)

model_duration_seconds = Histogram(
    "airouter_model_duration_seconds",
    "Model invocation duration in seconds",
    ["tier"],
    buckets=(0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0),
)

model_tokens_total = Counter(
    "airouter_model_tokens_total",
    "Tokens consumed",
    ["tier", "token_type"],
)

model_cost_usd_total = Counter(
    "airouter_model_cost_usd_total",
    "Model spend in USD",
    ["tier"],
)


# ============================================================================
# Classification Metrics
# ============================================================================

classifications_total = Counter(
    "airouter_classifications_total",
    "Classifications by mode and producing method",
    ["mode", "method"],
)

classification_degradations_total = Counter(
    "airouter_classification_degradations_total",
    "Model-assisted classifications that fell back to pattern scoring",
    ["reason"],
)

classification_confidence = Histogram(
    "airouter_classification_confidence",
    "Classification confidence scores",
    buckets=(0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 0.95, 1.0),
)


# ============================================================================
# Memory Metrics
# ============================================================================

memory_chunks_served = Histogram(
    "airouter_memory_chunks_served",
    "Chunks returned per context fetch",
    ["phase"],
    buckets=(0, 1, 2, 5, 10, 20, 50),
)

memory_context_tokens = Histogram(
    "airouter_memory_context_tokens",
    "Tokens of memory context returned per fetch",
    ["phase"],
    buckets=(0, 100, 250, 500, 1000, 2000, 4000, 8000),
)

memory_iterative_requests_total = Counter(
    "airouter_memory_iterative_requests_total",
    "Iterative context requests",
    ["found"],
)

memory_sessions_total = Counter(
    "airouter_memory_sessions_total",
    "Retrieval sessions by terminal outcome",
    ["outcome"],
)

memory_updates_total = Counter(
    "airouter_memory_updates_total",
    "Processed memory update operations",
    ["update_type", "status"],
)


# ============================================================================
# Decorator for timing operations
# ============================================================================


def track_duration(histogram: Histogram, **labels):
    """Decorator to track operation duration

    Args:
        histogram: Histogram metric to track duration
        **labels: Labels for the histogram
    """

    def observe(duration: float):
        if labels:
            histogram.labels(**labels).observe(duration)
        else:
            histogram.observe(duration)

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                observe(time.perf_counter() - start)

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                observe(time.perf_counter() - start)

        return async_wrapper if asyncio.iscoroutinefunction(func) else sync_wrapper

    return decorator


# ============================================================================
# Utility functions
# ============================================================================


def get_metrics() -> bytes:
    """Get Prometheus metrics in text format"""
    return generate_latest()


def get_content_type() -> str:
    """Get Prometheus metrics content type"""
    return CONTENT_TYPE_LATEST


class MetricsCollector:
    """Helper class for collecting metrics"""

    @staticmethod
    def record_api_request(method: str, endpoint: str, status: int, duration: float):
        api_requests_total.labels(method=method, endpoint=endpoint, status=status).inc()
        api_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration)

    @staticmethod
    def record_classification(mode: str, method: str, confidence: float):
        classifications_total.labels(mode=mode, method=method).inc()
        classification_confidence.observe(confidence)

    @staticmethod
    def record_degradation(reason: str):
        classification_degradations_total.labels(reason=reason).inc()

    @staticmethod
    def record_model_call(
        tier: str,
        duration: float,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        cost_usd: float = 0.0,
        purpose: str = "route",
    ):
        """Record a successful model invocation"""
        model_calls_total.labels(tier=tier, purpose=purpose).inc()
        model_duration_seconds.labels(tier=tier).observe(duration)
        model_tokens_total.labels(tier=tier, token_type="prompt").inc(prompt_tokens)
        model_tokens_total.labels(tier=tier, token_type="completion").inc(completion_tokens)
        if cost_usd:
            model_cost_usd_total.labels(tier=tier).inc(cost_usd)

    @staticmethod
    def record_model_error(tier: str, error_type: str):
        model_errors_total.labels(tier=tier, error_type=error_type).inc()

    @staticmethod
    def record_route(tier: str, outcome: str):
        routed_requests_total.labels(tier=tier, outcome=outcome).inc()

    @staticmethod
    def record_fallback(primary_tier: str, fallback_tier: str):
        fallbacks_total.labels(primary_tier=primary_tier, fallback_tier=fallback_tier).inc()

    @staticmethod
    def record_budget_rejection():
        budget_rejections_total.inc()

    @staticmethod
    def record_cache(hit: bool):
        response_cache_total.labels(result="hit" if hit else "miss").inc()

    @staticmethod
    def record_context_fetch(phase: str, chunks: int, tokens: int):
        memory_chunks_served.labels(phase=phase).observe(chunks)
        memory_context_tokens.labels(phase=phase).observe(tokens)

    @staticmethod
    def record_iterative_request(found: bool):
        memory_iterative_requests_total.labels(found="true" if found else "false").inc()

    @staticmethod
    def record_session_outcome(outcome: str):
        memory_sessions_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_memory_update(update_type: str, status: str):
        memory_updates_total.labels(update_type=update_type, status=status).inc()
