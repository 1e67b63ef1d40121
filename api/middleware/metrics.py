"""
Prometheus metrics middleware for the lead-qualification agent.

Exposes /metrics endpoint with request counters, latency histograms,
and business metrics for the conversation engine.
"""

import logging
import time

from fastapi import Request, Response
from prometheus_client import (
    Counter, Histogram, Gauge,
    generate_latest, CONTENT_TYPE_LATEST,
)
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Request metrics
REQUEST_COUNT = Counter(
    "leadflow_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)
REQUEST_LATENCY = Histogram(
    "leadflow_http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)
ACTIVE_REQUESTS = Gauge(
    "leadflow_http_active_requests",
    "Currently active HTTP requests",
)

# Business metrics
INTENT_COUNT = Counter(
    "leadflow_intent_total",
    "Oracle decisions by intent",
    ["intent"],
)
LEAD_SCORE_HIST = Histogram(
    "leadflow_lead_score",
    "Lead score distribution",
    buckets=[10, 20, 30, 40, 50, 60, 70, 80, 90, 100],
)
ORACLE_LATENCY = Histogram(
    "leadflow_oracle_duration_seconds",
    "Oracle completion latency",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0],
)
ORACLE_FALLBACKS = Counter(
    "leadflow_oracle_fallbacks_total",
    "Fallback decisions substituted",
    ["reason"],
)
BOOKING_OUTCOMES = Counter(
    "leadflow_booking_outcomes_total",
    "Booking attempts by outcome",
    ["outcome"],
)
REMINDERS_SENT = Counter(
    "leadflow_reminders_total",
    "Reminder sends by kind and result",
    ["kind", "result"],
)
FORWARDS = Counter(
    "leadflow_forwards_total",
    "Automation forwards by result",
    ["result"],
)


def record_intent(intent: str):
    """Record an oracle decision intent."""
    INTENT_COUNT.labels(intent=intent).inc()


def record_lead_score(score: float):
    """Record a lead score."""
    LEAD_SCORE_HIST.observe(score)


def record_oracle_latency(seconds: float):
    """Record oracle completion latency."""
    ORACLE_LATENCY.observe(seconds)


def record_oracle_fallback(reason: str):
    ORACLE_FALLBACKS.labels(reason=reason).inc()


def record_booking(outcome: str):
    BOOKING_OUTCOMES.labels(outcome=outcome).inc()


def record_reminder(kind: str, success: bool):
    REMINDERS_SENT.labels(kind=kind, result="sent" if success else "failed").inc()


def record_forward(success: bool):
    FORWARDS.labels(result="ok" if success else "failed").inc()


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware that records HTTP request metrics."""

    async def dispatch(self, request: Request, call_next):
        ACTIVE_REQUESTS.inc()
        start = time.time()

        try:
            response = await call_next(request)
        except Exception:
            ACTIVE_REQUESTS.dec()
            raise

        duration = time.time() - start
        endpoint = request.url.path

        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=response.status_code,
        ).inc()
        REQUEST_LATENCY.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)
        ACTIVE_REQUESTS.dec()

        return response


async def metrics_endpoint(request: Request) -> Response:
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
