"""
Recurring Billing Engine - Prometheus Metrics
Observability for subscription lifecycle, charging and governance
"""

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry

# Create custom registry
metrics_registry = CollectorRegistry()

# ============================================
# SUBSCRIPTION METRICS
# ============================================

subscription_created_counter = Counter(
    'rbe_subscriptions_created_total',
    'Total number of subscriptions created',
    ['asset_ref'],
    registry=metrics_registry
)

subscription_modified_counter = Counter(
    'rbe_subscriptions_modified_total',
    'Total number of subscriptions modified',
    ['asset_ref'],
    registry=metrics_registry
)

subscription_cancelled_counter = Counter(
    'rbe_subscriptions_cancelled_total',
    'Total number of cancellations',
    ['initiator'],  # merchant, subscriber
    registry=metrics_registry
)

# ============================================
# CHARGE METRICS
# ============================================

charge_completed_counter = Counter(
    'rbe_charges_completed_total',
    'Total number of charges completed',
    ['asset_ref'],
    registry=metrics_registry
)

charge_failed_counter = Counter(
    'rbe_charges_failed_total',
    'Total number of charges rejected',
    ['reason'],
    registry=metrics_registry
)

charge_amount_histogram = Histogram(
    'rbe_charge_amount_base_units',
    'Gross charge amounts in base units',
    buckets=[100, 1_000, 10_000, 100_000, 1_000_000, 10_000_000, 100_000_000, 100_000_000_000],
    registry=metrics_registry
)

commission_volume_counter = Counter(
    'rbe_commission_volume_base_units_total',
    'Commission routed to the administrator in base units',
    ['asset_ref'],
    registry=metrics_registry
)

# ============================================
# INVARIANT ENFORCEMENT METRICS
# ============================================

invariant_check_counter = Counter(
    'rbe_invariant_checks_total',
    'Total number of invariant checks',
    ['invariant_id', 'check_type', 'result'],
    registry=metrics_registry
)

invariant_violation_counter = Counter(
    'rbe_invariant_violations_total',
    'Total number of invariant violations',
    ['invariant_id', 'criticality'],
    registry=metrics_registry
)

rollback_counter = Counter(
    'rbe_rollbacks_total',
    'Total number of rollbacks executed',
    ['reason'],
    registry=metrics_registry
)

# ============================================
# GOVERNANCE METRICS
# ============================================

governance_change_counter = Counter(
    'rbe_governance_changes_total',
    'Administrator and limit changes',
    ['change_type'],  # administrator, limits
    registry=metrics_registry
)

max_amount_gauge = Gauge(
    'rbe_governance_max_amount',
    'Current maximum subscription amount',
    registry=metrics_registry
)

min_interval_gauge = Gauge(
    'rbe_governance_min_interval_seconds',
    'Current minimum billing interval',
    registry=metrics_registry
)

# ============================================
# API METRICS
# ============================================

api_request_counter = Counter(
    'rbe_api_requests_total',
    'Total API requests',
    ['endpoint', 'method', 'status_code'],
    registry=metrics_registry
)

# ============================================
# HELPER FUNCTIONS
# ============================================

def record_charge_completed(asset_ref: str, gross: int, commission: int):
    """Record a successful charge."""
    charge_completed_counter.labels(asset_ref=asset_ref).inc()
    charge_amount_histogram.observe(gross)
    commission_volume_counter.labels(asset_ref=asset_ref).inc(commission)

def record_charge_failed(reason: str):
    charge_failed_counter.labels(reason=reason).inc()

def record_invariant_check(invariant_id: str, check_type: str, result: bool, criticality: str = "critical"):
    """Record invariant check metrics."""
    invariant_check_counter.labels(
        invariant_id=invariant_id,
        check_type=check_type,
        result="passed" if result else "failed"
    ).inc()

    if not result:
        invariant_violation_counter.labels(
            invariant_id=invariant_id,
            criticality=criticality
        ).inc()

def record_rollback(reason: str):
    rollback_counter.labels(reason=reason).inc()

def update_governance_limits(max_amount: int, min_interval: int):
    """Mirror current governance limits into gauges."""
    max_amount_gauge.set(max_amount)
    min_interval_gauge.set(min_interval)

def record_api_request(endpoint: str, method: str, status_code: int):
    api_request_counter.labels(
        endpoint=endpoint,
        method=method,
        status_code=status_code
    ).inc()
