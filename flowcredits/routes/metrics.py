"""
Prometheus metrics endpoint.

Exposes HTTP and ledger metrics for monitoring.
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
# Ledger Metrics - Credits
# ============================================

credits_purchased = Counter(
    'credits_purchased_total',
    'Total credits recognised from completed payments',
    ['currency']
)

credits_consumed = Counter(
    'credits_consumed_total',
    'Total credits consumed by workflows',
    ['tenant_id']
)

tenant_available_credits = Gauge(
    'tenant_available_credits',
    'Available credits per tenant after the last mutation',
    ['tenant_id']
)

# ============================================
# Ledger Metrics - Reservations & Payments
# ============================================

reservations_total = Counter(
    'reservations_total',
    'Reservation outcomes',
    ['outcome']
)

payments_total = Counter(
    'payments_total',
    'Payment status transitions',
    ['status']
)

# ============================================
# Ledger Health
# ============================================

ledger_busy_total = Counter(
    'ledger_busy_total',
    'Requests rejected because the tenant critical section was busy',
    ['tenant_id']
)

balance_drift_total = Counter(
    'balance_drift_total',
    'Balances whose stored aggregate differs from log replay',
    ['tenant_id']
)

# ============================================
# Alerts & Notifications
# ============================================

balance_alerts_total = Counter(
    'balance_alerts_total',
    'Balance alerts emitted',
    ['type']
)

notifications_sent = Counter(
    'notifications_sent_total',
    'Alert notifications sent',
    ['status']
)

rate_limit_exceeded = Counter(
    'rate_limit_exceeded_total',
    'Total requests blocked by rate limiting',
    ['tenant_id']
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Called by the logging middleware after each request.
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


def track_credits_purchased(currency: str, amount: int):
    credits_purchased.labels(currency=currency).inc(amount)


def track_credits_consumed(tenant_id: str, amount: int):
    credits_consumed.labels(tenant_id=tenant_id).inc(amount)


def update_available_credits(tenant_id: str, available: int):
    tenant_available_credits.labels(tenant_id=tenant_id).set(available)


def track_reservation(outcome: str):
    """outcome: reserved, denied, consumed, released."""
    reservations_total.labels(outcome=outcome).inc()


def track_payment(status: str):
    payments_total.labels(status=status).inc()


def track_ledger_busy(tenant_id: str):
    ledger_busy_total.labels(tenant_id=tenant_id).inc()


def track_balance_drift(tenant_id: str):
    balance_drift_total.labels(tenant_id=tenant_id).inc()


def track_balance_alert(alert_type: str):
    balance_alerts_total.labels(type=alert_type).inc()


def track_notification(status: str):
    notifications_sent.labels(status=status).inc()


def track_rate_limit_exceeded(tenant_id: str):
    """Record a rate limit block."""
    rate_limit_exceeded.labels(tenant_id=tenant_id).inc()


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
