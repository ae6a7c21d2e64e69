"""
Prometheus-style metrics endpoint.
"""
import time
from typing import Annotated, Callable, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from unified_inbox.core.config import Settings
from unified_inbox.core.dependencies import get_app_settings, get_hub, get_ingestion_service
from unified_inbox.core.logging import get_logger
from unified_inbox.ingestion.fanout import SubscriberHub
from unified_inbox.ingestion.pipeline import IngestionService
from unified_inbox.schemas.message import IngestionResult, Platform

logger = get_logger(__name__)

router = APIRouter(tags=["Metrics"])

# Keep only the most recent durations per route
MAX_DURATIONS = 1000

# Simple in-memory metrics storage
_metrics = {
    "http_requests_total": {},  # {(method, path, status): count}
    "http_request_duration_seconds": {},  # {(method, path): [durations]}
    "ingestion_results_total": {},  # {(platform, status): count}
    "startup_time": None,
}


def reset_metrics() -> None:
    """Clear all recorded metrics."""
    _metrics["http_requests_total"] = {}
    _metrics["http_request_duration_seconds"] = {}
    _metrics["ingestion_results_total"] = {}
    _metrics["startup_time"] = None


def record_request(method: str, path: str, status_code: int, duration: float) -> None:
    """Record an HTTP request metric."""
    counters: Dict[Tuple[str, str, int], int] = _metrics["http_requests_total"]
    key = (method, path, status_code)
    counters[key] = counters.get(key, 0) + 1

    durations: List[float] = _metrics["http_request_duration_seconds"].setdefault((method, path), [])
    durations.append(duration)
    if len(durations) > MAX_DURATIONS:
        del durations[:-MAX_DURATIONS]


def record_ingestion(platform: Platform, result: IngestionResult) -> None:
    """Count one ingestion outcome; registered as an IngestionService listener."""
    counters: Dict[Tuple[str, str], int] = _metrics["ingestion_results_total"]
    key = (platform.value, result.status.value)
    counters[key] = counters.get(key, 0) + 1


def set_startup_time() -> None:
    """Record application startup time."""
    _metrics["startup_time"] = time.time()


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to collect request metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip metrics endpoint to avoid recursion
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        # Use the route template to avoid high cardinality from path parameters
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)

        record_request(
            method=request.method,
            path=path,
            status_code=response.status_code,
            duration=duration,
        )

        return response


def generate_prometheus_metrics(
    app_version: str,
    delivery_totals=None,
    subscribers: int = 0,
    queue_depths: Optional[Dict[str, int]] = None,
) -> str:
    """Generate Prometheus-format metrics output."""
    lines = []

    # Application info
    lines.append("# HELP app_info Application information")
    lines.append("# TYPE app_info gauge")
    lines.append(f'app_info{{version="{app_version}"}} 1')
    lines.append("")

    # Startup time
    if _metrics["startup_time"]:
        lines.append("# HELP app_start_time_seconds Unix timestamp when the app started")
        lines.append("# TYPE app_start_time_seconds gauge")
        lines.append(f'app_start_time_seconds {_metrics["startup_time"]:.3f}')
        lines.append("")

    # HTTP requests total
    lines.append("# HELP http_requests_total Total number of HTTP requests")
    lines.append("# TYPE http_requests_total counter")
    for (method, path, status), count in sorted(_metrics["http_requests_total"].items()):
        lines.append(f'http_requests_total{{method="{method}",path="{path}",status="{status}"}} {count}')
    lines.append("")

    # HTTP request duration (simplified histogram summary)
    lines.append("# HELP http_request_duration_seconds HTTP request duration in seconds")
    lines.append("# TYPE http_request_duration_seconds summary")
    for (method, path), durations in sorted(_metrics["http_request_duration_seconds"].items()):
        if durations:
            lines.append(f'http_request_duration_seconds_sum{{method="{method}",path="{path}"}} {sum(durations):.6f}')
            lines.append(f'http_request_duration_seconds_count{{method="{method}",path="{path}"}} {len(durations)}')
    lines.append("")

    # Ingestion outcomes
    lines.append("# HELP ingestion_results_total Ingestion outcomes by platform and status")
    lines.append("# TYPE ingestion_results_total counter")
    for (platform, status), count in sorted(_metrics["ingestion_results_total"].items()):
        lines.append(f'ingestion_results_total{{platform="{platform}",status="{status}"}} {count}')
    lines.append("")

    # Per-platform ingestion backlog
    if queue_depths:
        lines.append("# HELP ingestion_queue_depth Payloads waiting for a worker")
        lines.append("# TYPE ingestion_queue_depth gauge")
        for platform, depth in sorted(queue_depths.items()):
            lines.append(f'ingestion_queue_depth{{platform="{platform}"}} {depth}')
        lines.append("")

    # Fan-out
    lines.append("# HELP fanout_subscribers Connected subscriber sessions")
    lines.append("# TYPE fanout_subscribers gauge")
    lines.append(f"fanout_subscribers {subscribers}")
    if delivery_totals is not None:
        lines.append("# HELP fanout_deliveries_total Fan-out enqueue outcomes")
        lines.append("# TYPE fanout_deliveries_total counter")
        lines.append(f'fanout_deliveries_total{{outcome="attempted"}} {delivery_totals.attempted}')
        lines.append(f'fanout_deliveries_total{{outcome="delivered"}} {delivery_totals.delivered}')
        lines.append(f'fanout_deliveries_total{{outcome="dropped"}} {delivery_totals.dropped}')

    return "\n".join(lines) + "\n"


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Returns metrics in Prometheus exposition format.",
    response_class=Response,
)
async def metrics(
    settings: Annotated[Settings, Depends(get_app_settings)],
    hub: Annotated[SubscriberHub, Depends(get_hub)],
    service: Annotated[IngestionService, Depends(get_ingestion_service)],
) -> Response:
    """
    Prometheus-style metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    content = generate_prometheus_metrics(
        app_version=settings.app_version,
        delivery_totals=hub.totals,
        subscribers=hub.subscriber_count,
        queue_depths={p.value: ingestor.backlog for p, ingestor in service.ingestors.items()},
    )
    return Response(
        content=content,
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
