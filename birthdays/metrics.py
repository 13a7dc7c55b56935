"""Prometheus metrics for the HTTP service."""
from __future__ import annotations

import logging
from typing import Optional

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from prometheus_client import GCCollector, PlatformCollector, ProcessCollector

logger = logging.getLogger("birthdays.metrics")


class ServiceMetrics:
    """Request and database metrics kept in a registry owned by one application."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, namespace: str = "birthday", registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()
        # A private registry does not get the default process collectors.
        if registry is None:
            ProcessCollector(registry=self.registry)
            PlatformCollector(registry=self.registry)
            GCCollector(registry=self.registry)

        self.requests = Counter(
            "http_requests_total",
            "Total number of HTTP requests",
            ["method", "route", "status_code"],
            namespace=namespace,
            registry=self.registry,
        )
        self.request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "route"],
            namespace=namespace,
            registry=self.registry,
        )
        self.database_up = Gauge(
            "database_up",
            "Whether the last health probe of a database role succeeded",
            ["role"],
            namespace=namespace,
            registry=self.registry,
        )
        self.greetings = Counter(
            "greetings_total",
            "Greeting lookups by outcome",
            ["outcome"],
            namespace=namespace,
            registry=self.registry,
        )
        logger.debug("Metrics initialised for namespace %s", namespace)

    def observe_request(self, method: str, route: str, status_code: int, duration: float) -> None:
        self.requests.labels(method=method, route=route, status_code=str(status_code)).inc()
        self.request_duration.labels(method=method, route=route).observe(duration)

    def record_health(self, primary: bool, read_replica: bool) -> None:
        self.database_up.labels(role="primary").set(1 if primary else 0)
        self.database_up.labels(role="read_replica").set(1 if read_replica else 0)

    def render(self) -> bytes:
        return generate_latest(self.registry)


__all__ = ["ServiceMetrics"]
