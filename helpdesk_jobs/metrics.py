"""Prometheus metrics for the broker and listener services.

Each service owns a ``CollectorRegistry`` so several instances (and tests) can
coexist in one process. When metrics are disabled every recording call is a
no-op.

Call ``start_metrics_server(port, registry)`` once in a process to expose
/metrics on its own port (listener), or use ``render_latest`` from an HTTP
handler (broker).
"""

from __future__ import annotations

from typing import Optional, Sequence

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    ProcessCollector,
    generate_latest,
    start_http_server,
)

from helpdesk_jobs.config import DEFAULT_BROKER_BUCKETS, DEFAULT_LISTENER_BUCKETS


class ListenerMetrics:
    """Job duration histogram and job counter labeled by queue, type and status."""

    def __init__(
        self,
        prefix: str = "listener_",
        buckets: Optional[Sequence[float]] = None,
        enabled: bool = True,
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self.enabled = enabled
        self.registry = registry or CollectorRegistry()
        if enabled:
            ProcessCollector(namespace=prefix.rstrip("_"), registry=self.registry)
        self.job_duration = Histogram(
            f"{prefix}job_duration_seconds",
            "Duration to process a message",
            ["queue", "type", "status"],
            buckets=tuple(buckets or DEFAULT_LISTENER_BUCKETS),
            registry=self.registry,
        )
        self.jobs_total = Counter(
            f"{prefix}jobs_total",
            "Total jobs processed",
            ["queue", "type", "status"],
            registry=self.registry,
        )

    def track_job(self, queue: str, job_type: str, status: str, duration_seconds: Optional[float] = None) -> None:
        if not self.enabled:
            return
        labels = (queue or "unknown", job_type or "unknown", status)
        self.jobs_total.labels(*labels).inc()
        if duration_seconds is not None:
            self.job_duration.labels(*labels).observe(duration_seconds)


class BrokerMetrics:
    """Publish counter and HTTP request duration histogram for the broker service."""

    def __init__(
        self,
        prefix: str = "broker_",
        buckets: Optional[Sequence[float]] = None,
        enabled: bool = True,
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self.enabled = enabled
        self.registry = registry or CollectorRegistry()
        if enabled:
            ProcessCollector(namespace=prefix.rstrip("_"), registry=self.registry)
        self.http_request_duration_seconds = Histogram(
            f"{prefix}http_request_duration_seconds",
            "Duration of HTTP requests in seconds",
            ["method", "route", "status_code"],
            buckets=tuple(buckets or DEFAULT_BROKER_BUCKETS),
            registry=self.registry,
        )
        self.rabbit_published_total = Counter(
            f"{prefix}rabbit_published_total",
            "Total messages published to RabbitMQ",
            ["routing_key"],
            registry=self.registry,
        )

    def record_publish(self, routing_key: str) -> None:
        if not self.enabled:
            return
        self.rabbit_published_total.labels(routing_key or "unknown").inc()

    def observe_request(self, method: str, route: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled:
            return
        self.http_request_duration_seconds.labels(method, route or "unknown", str(status_code)).observe(
            duration_seconds
        )


def render_latest(registry: CollectorRegistry) -> tuple[bytes, str]:
    return generate_latest(registry), CONTENT_TYPE_LATEST


def start_metrics_server(port: int, registry: CollectorRegistry) -> None:
    start_http_server(port, registry=registry)
