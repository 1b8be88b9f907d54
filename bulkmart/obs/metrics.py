# bulkmart/obs/metrics.py
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware

http_requests_total = Counter("http_requests_total", "HTTP requests", ["method", "path", "code"])
http_request_duration = Histogram(
    "http_request_duration_seconds", "HTTP request duration seconds", ["method", "path"]
)

# 状态机：transition=create/confirm/cancel/expire/no_show/complete/admin_refund
# outcome=APPLIED/NOOP/CONFLICT/REJECTED
reservation_transitions_total = Counter(
    "reservation_transitions_total", "Reservation state transitions", ["transition", "outcome"]
)
payment_webhook_events_total = Counter(
    "payment_webhook_events_total", "Payment webhook events", ["event_type", "outcome"]
)
reconciliation_alerts_total = Counter(
    "reconciliation_alerts_total", "Money/inventory reconciliation alerts", ["kind"]
)
payment_processor_errors_total = Counter(
    "payment_processor_errors_total", "Payment processor call failures", ["op"]
)


def _route_path(request) -> str:
    # 用路由模板做 label，避免 /reservations/<uuid> 把基数撑爆
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        path = _route_path(request)
        http_requests_total.labels(request.method, path, str(response.status_code)).inc()
        http_request_duration.labels(request.method, path).observe(elapsed)
        return response
