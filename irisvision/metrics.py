from prometheus_client import Counter, Histogram, Gauge
# Prometheus metrics definitions

# Scan workflow metrics
# scan_requests_total: Counter
# scan_latency_seconds: Histogram of end-to-end scan latency

scan_requests_total = Counter(
    "scan_requests_total", "Total scan requests"
)

_scan_latency_buckets = (
    0.5,
    1.0,
    2.0,
    4.0,
    8.0,
    16.0,
    32.0,
)

# Measured from quota check to terminal state
scan_latency_seconds = Histogram(
    "scan_latency_seconds", "Scan latency", buckets=_scan_latency_buckets
)

# Quota rejects when hitting the weekly limit
quota_reject_total = Counter(
    "quota_reject_total", "Number of quota rejected scans"
)

payload_too_large_total = Counter(
    "payload_too_large_total", "Number of images rejected by the packager"
)

# Incremented per timed out outbound attempt (retries included)
outbound_timeout_total = Counter(
    "outbound_timeout_total", "Number of outbound call timeouts", ["call"]
)

# Collaborator contract violations, kept apart from outages
analysis_schema_violation_total = Counter(
    "analysis_schema_violation_total", "Number of malformed analysis responses"
)

fallback_total = Counter(
    "fallback_total", "Scans completed with the offline analysis"
)

store_write_failure_total = Counter(
    "store_write_failure_total", "Store writes that could not be made durable", ["store"]
)

# Operations buffered on the device waiting for the remote store
pending_operations = Gauge(
    "pending_operations", "Queued entitlement and history writes"
)

__all__ = [
    "scan_requests_total",
    "scan_latency_seconds",
    "quota_reject_total",
    "payload_too_large_total",
    "outbound_timeout_total",
    "analysis_schema_violation_total",
    "fallback_total",
    "store_write_failure_total",
    "pending_operations",
]
