from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Request, Response
import structlog

logger = structlog.get_logger()

# Prometheus metrics
REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code']
)

REQUEST_DURATION = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint']
)

API_ERRORS = Counter(
    'api_errors_total',
    'Total API errors',
    ['endpoint', 'error_type']
)

UNIT_REGISTRATIONS = Counter(
    'blood_unit_registrations_total',
    'Blood units registered',
    ['blood_group']
)

UNIT_STATUS_CHANGES = Counter(
    'blood_unit_status_changes_total',
    'Blood unit status changes',
    ['status']
)

UNIT_TRANSFERS = Counter(
    'blood_unit_transfers_total',
    'Blood unit transfers by destination kind and outcome',
    ['to_kind', 'outcome']
)

REQUEST_TRANSITIONS = Counter(
    'blood_request_transitions_total',
    'Blood request status transitions',
    ['status']
)

INVENTORY_RECOMPUTES = Counter(
    'center_inventory_recomputes_total',
    'Center inventory cache rebuilds'
)

METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST


def setup_prometheus_metrics():
    """Setup Prometheus metrics collection."""
    logger.info("Prometheus metrics enabled")


def track_request_metrics(request: Request, response: Response, process_time: float):
    """Track request metrics for Prometheus."""
    REQUEST_COUNT.labels(
        method=request.method,
        endpoint=request.url.path,
        status_code=response.status_code
    ).inc()

    REQUEST_DURATION.labels(
        method=request.method,
        endpoint=request.url.path
    ).observe(process_time)


def track_api_error(endpoint: str, error_type: str):
    """Track API errors."""
    API_ERRORS.labels(
        endpoint=endpoint,
        error_type=error_type
    ).inc()


def track_unit_registration(blood_group: str):
    UNIT_REGISTRATIONS.labels(blood_group=blood_group).inc()


def track_unit_status_change(status: str):
    UNIT_STATUS_CHANGES.labels(status=status).inc()


def track_unit_transfer(to_kind: str, outcome: str):
    UNIT_TRANSFERS.labels(to_kind=to_kind, outcome=outcome).inc()


def track_request_transition(status: str):
    REQUEST_TRANSITIONS.labels(status=status).inc()


def track_inventory_recompute():
    INVENTORY_RECOMPUTES.inc()


def get_prometheus_metrics():
    """Get Prometheus metrics in text format."""
    return generate_latest()
