"""LeadZap – Instrumentation.

structlog configuration (JSON, PII-masked) and Prometheus metrics for the
gateway and the audio pipeline.
"""

import logging
import time
from typing import Callable

import structlog
from fastapi import APIRouter, FastAPI, Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from app.integrations.pii_filter import filter_log_record

router = APIRouter(tags=["monitoring"])

REQUEST_COUNT = Counter(
    "leadzap_http_requests_total",
    "Total HTTP requests by method, endpoint and status",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "leadzap_http_request_duration_seconds",
    "HTTP request latency by method and endpoint",
    ["method", "endpoint"],
)

MESSAGES_SENT = Counter(
    "leadzap_whatsapp_messages_total",
    "Outbound WhatsApp messages by type and final status",
    ["message_type", "status"],
)

AUDIO_DELIVERIES = Counter(
    "leadzap_audio_deliveries_total",
    "Background audio deliveries by outcome",
    ["status"],
)

TRANSCODE_SECONDS = Histogram(
    "leadzap_transcode_seconds",
    "Wall-clock time of ffmpeg Opus/OGG transcodes",
    buckets=(0.25, 0.5, 1, 2, 5, 10, 30, 60, 120),
)

BACKGROUND_TASKS = Gauge(
    "leadzap_background_tasks",
    "Background tasks currently supervised by the gateway",
)


@router.get("/metrics")
def metrics():
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def setup_logging(log_level: str = "info") -> None:
    """Configure structlog with PII masking."""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            filter_log_record,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def setup_instrumentation(app: FastAPI, log_level: str = "info") -> None:
    """Configure logging and attach the request metrics middleware."""
    setup_logging(log_level)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        path = request.url.path
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
        finally:
            duration = time.time() - start_time
            REQUEST_COUNT.labels(method=request.method, endpoint=path, status=status).inc()
            REQUEST_LATENCY.labels(method=request.method, endpoint=path).observe(duration)
        return response
