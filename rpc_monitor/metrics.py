from prometheus_client import Counter, Gauge

# Per-endpoint observation metrics
SLOT_GAUGE = Gauge(
    "rpc_monitor_slot",
    "Latest finalized slot reported by the endpoint",
    ["endpoint"],
)
LATENCY_GAUGE = Gauge(
    "rpc_monitor_latency_seconds",
    "Round-trip latency of the health measurement call",
    ["endpoint"],
)
DROPPED_OBSERVATIONS_COUNTER = Counter(
    "rpc_monitor_dropped_observations_total",
    "Polls that produced no storable observation",
    ["endpoint"],
)

# Fetch strategy metrics
FETCH_TIER_COUNTER = Counter(
    "rpc_monitor_fetch_tier_total",
    "Completed polls by the protocol tier that satisfied them",
    ["tier"],  # "preferred", "fallback", "legacy", "degraded"
)
TIER_FAILURE_COUNTER = Counter(
    "rpc_monitor_tier_failures_total",
    "Failed tier attempts by tier and failure kind",
    ["tier", "kind"],
)

# Store metrics
RETENTION_DELETED_COUNTER = Counter(
    "rpc_monitor_retention_deleted_total",
    "Observations evicted by the retention sweep",
)
STORAGE_ERRORS_COUNTER = Counter(
    "rpc_monitor_storage_errors_total",
    "Storage failures by operation",
    ["operation"],
)
