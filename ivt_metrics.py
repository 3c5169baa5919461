"""
InvoiceTrail - Prometheus Metrics
Observability for the audit chain, numbering and verification paths
"""

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry

# Create custom registry
metrics_registry = CollectorRegistry()

# ============================================
# AUDIT CHAIN METRICS
# ============================================

events_appended_counter = Counter(
    'ivt_audit_events_appended_total',
    'Total number of audit events durably appended',
    ['kind'],
    registry=metrics_registry
)

append_conflict_counter = Counter(
    'ivt_audit_append_conflicts_total',
    'Appends rejected because the log changed underneath the writer',
    registry=metrics_registry
)

append_duration_histogram = Histogram(
    'ivt_audit_append_duration_seconds',
    'Time to build and persist one audit event, retries included',
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
    registry=metrics_registry
)

# ============================================
# NUMBERING METRICS
# ============================================

numbers_allocated_counter = Counter(
    'ivt_numbers_allocated_total',
    'Total number of document numbers allocated',
    ['domain'],
    registry=metrics_registry
)

allocation_conflict_counter = Counter(
    'ivt_allocation_conflicts_total',
    'Allocations abandoned after exhausting the retry budget',
    ['domain'],
    registry=metrics_registry
)

# ============================================
# VERIFICATION METRICS
# ============================================

verification_counter = Counter(
    'ivt_verifications_total',
    'Total number of chain verifications',
    ['result'],  # passed, failed
    registry=metrics_registry
)

integrity_finding_counter = Counter(
    'ivt_integrity_findings_total',
    'Integrity findings reported by the verifier',
    ['code'],
    registry=metrics_registry
)

last_verification_gauge = Gauge(
    'ivt_last_verification_passed',
    'Result of the most recent verification (1=passed, 0=failed)',
    registry=metrics_registry
)

# ============================================
# STORAGE METRICS
# ============================================

storage_timeout_counter = Counter(
    'ivt_storage_timeouts_total',
    'Durable operations that exceeded their time bound',
    ['operation'],
    registry=metrics_registry
)

# ============================================
# HELPER FUNCTIONS
# ============================================

def record_event_appended(kind: str, duration: float):
    """Record a durable append."""
    events_appended_counter.labels(kind=kind).inc()
    append_duration_histogram.observe(duration)

def record_append_conflict():
    append_conflict_counter.inc()

def record_allocation(domain: str):
    numbers_allocated_counter.labels(domain=domain).inc()

def record_allocation_conflict(domain: str):
    allocation_conflict_counter.labels(domain=domain).inc()

def record_verification(passed: bool, finding_codes):
    """Record verification outcome and each finding code."""
    verification_counter.labels(result="passed" if passed else "failed").inc()
    last_verification_gauge.set(1 if passed else 0)
    for code in finding_codes:
        integrity_finding_counter.labels(code=code).inc()

def record_storage_timeout(operation: str):
    storage_timeout_counter.labels(operation=operation).inc()
