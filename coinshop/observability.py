"""
Observability: Prometheus metrics.
- HTTP request count/latency per endpoint.
- Ledger operation outcomes (ok / rejected / error code).
"""
import time

from prometheus_client import Counter, Histogram, generate_latest, CollectorRegistry, CONTENT_TYPE_LATEST

_metrics_registry: CollectorRegistry | None = None
_request_count: Counter | None = None
_request_latency: Histogram | None = None
_ledger_operations: Counter | None = None


def setup_metrics() -> CollectorRegistry:
    global _metrics_registry, _request_count, _request_latency, _ledger_operations
    _metrics_registry = CollectorRegistry()
    _request_count = Counter(
        "http_requests_total",
        "Total HTTP requests",
        ["method", "endpoint", "status"],
        registry=_metrics_registry,
    )
    _request_latency = Histogram(
        "http_request_duration_seconds",
        "HTTP request latency",
        ["method", "endpoint"],
        registry=_metrics_registry,
    )
    _ledger_operations = Counter(
        "ledger_operations_total",
        "Ledger operations by outcome",
        ["operation", "outcome"],
        registry=_metrics_registry,
    )
    return _metrics_registry


def record_ledger_operation(operation: str, outcome: str) -> None:
    if _ledger_operations is not None:
        _ledger_operations.labels(operation=operation, outcome=outcome).inc()


def get_metrics_content() -> bytes:
    if _metrics_registry is None:
        return b""
    return generate_latest(_metrics_registry)


def instrument_fastapi(app) -> None:
    setup_metrics()

    from fastapi import Response
    from starlette.middleware.base import BaseHTTPMiddleware

    class PrometheusMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request, call_next):
            if request.url.path in ("/metrics", "/health"):
                return await call_next(request)
            start = time.perf_counter()
            response = await call_next(request)
            duration = time.perf_counter() - start
            c, h = _request_count, _request_latency
            if c and h:
                # route template keeps /api/buy/{item} to one series
                route = request.scope.get("route")
                endpoint = getattr(route, "path", None) or request.url.path or "/"
                c.labels(method=request.method, endpoint=endpoint, status=response.status_code).inc()
                h.labels(method=request.method, endpoint=endpoint).observe(duration)
            return response

    app.add_middleware(PrometheusMiddleware)

    @app.get("/metrics")
    async def metrics():
        return Response(content=get_metrics_content(), media_type=CONTENT_TYPE_LATEST)
