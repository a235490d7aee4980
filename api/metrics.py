"""
Prometheus metrics for evescope.

Provides observability for:
- Refresh cycles (generations started, results discarded as stale)
- Per-chart request outcomes and latency
- Live chart sinks and dashboard sessions
- Backend streaming
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, Info

# =============================================================================
# Refresh Engine Metrics
# =============================================================================

# Refresh cycles started (one per filter mutation or explicit refresh)
REFRESH_CYCLES = Counter(
    "evescope_refresh_cycles_total",
    "Total dashboard refresh cycles started",
)

# Results that arrived but were never applied
RESULTS_DISCARDED = Counter(
    "evescope_results_discarded_total",
    "Count of backend results discarded without a visual update",
    ["reason"],  # stale, stale_batch, shape
)

# Chart request outcomes
CHART_REQUESTS = Counter(
    "evescope_chart_requests_total",
    "Count of chart requests by terminal state",
    ["chart", "outcome"],  # outcome: complete, empty, error, superseded
)

CHART_REQUEST_LATENCY_SECONDS = Histogram(
    "evescope_chart_request_latency_seconds",
    "Time from issue to resolution of a chart request",
    ["chart"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

STREAM_BATCHES = Counter(
    "evescope_stream_batches_total",
    "Streamed aggregation batches received, applied or not",
    ["chart"],
)

# =============================================================================
# Sink / Session Metrics
# =============================================================================

LIVE_CHART_SINKS = Gauge(
    "evescope_live_chart_sinks",
    "Number of live chart instances owned by chart sink registries",
)

DASHBOARD_SESSIONS = Gauge(
    "evescope_dashboard_sessions",
    "Number of open dashboard sessions",
)

# =============================================================================
# Build Info
# =============================================================================

BUILD_INFO = Info(
    "evescope_build",
    "Build information for evescope",
)


# =============================================================================
# Helper Functions
# =============================================================================


def record_chart_outcome(chart: str, outcome: str, latency_seconds: float | None = None):
    """Record the terminal state of one chart request."""
    # sparkline keys carry the signature text; keep label cardinality bounded
    label = chart.split(":", 1)[0] if chart.startswith("sparkline:") else chart
    CHART_REQUESTS.labels(chart=label, outcome=outcome).inc()
    if latency_seconds is not None:
        CHART_REQUEST_LATENCY_SECONDS.labels(chart=label).observe(latency_seconds)


def record_discard(reason: str):
    """Record a result dropped without a visual update."""
    RESULTS_DISCARDED.labels(reason=reason).inc()


def set_build_info(version: str, env: str):
    """Set build information."""
    BUILD_INFO.info({"version": version, "environment": env})
