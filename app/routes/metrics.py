"""
Prometheus metrics endpoint.

Exposes delivery pipeline metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Delivery Metrics
# ============================================

events_dispatched = Counter(
    'webhook_events_dispatched_total',
    'Domain events received for dispatch',
    ['event_type']
)

delivery_attempts = Counter(
    'webhook_delivery_attempts_total',
    'Delivery attempts by outcome',
    ['event_type', 'outcome']
)

delivery_attempt_duration = Histogram(
    'webhook_delivery_attempt_duration_seconds',
    'Duration of a single outbound webhook call',
    ['outcome'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

retries_scheduled = Counter(
    'webhook_retries_scheduled_total',
    'Automatic retries persisted by the scheduler',
    ['event_type']
)

deliveries_terminated = Counter(
    'webhook_deliveries_terminated_total',
    'Deliveries reaching a terminal state',
    ['status']
)

# ============================================
# Sweep Metrics
# ============================================

sweep_due_deliveries = Gauge(
    'webhook_sweep_due_deliveries',
    'Deliveries found due by the last retry sweep'
)

deliveries_purged = Counter(
    'webhook_deliveries_purged_total',
    'Deliveries removed by retention cleanup'
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_event_dispatched(event_type: str):
    events_dispatched.labels(event_type=event_type).inc()


def track_attempt(event_type: str, outcome: str, duration_ms: int):
    """Record one delivery attempt and its duration."""
    delivery_attempts.labels(event_type=event_type, outcome=outcome).inc()
    delivery_attempt_duration.labels(outcome=outcome).observe(duration_ms / 1000)


def track_retry_scheduled(event_type: str):
    retries_scheduled.labels(event_type=event_type).inc()


def track_terminated(status: str):
    deliveries_terminated.labels(status=status).inc()


def update_sweep_due(count: int):
    sweep_due_deliveries.set(count)


def track_purged(count: int):
    deliveries_purged.inc(count)


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
