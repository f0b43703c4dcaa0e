# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import time
from typing import Callable, ClassVar, Iterator

import prometheus_client
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.registry import Collector
from starlette.endpoints import HTTPEndpoint
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

from ..store import FederationStore


def _endpoint_name(request: Request) -> str:
    # Set by the router once the request was matched
    endpoint = request.scope.get("endpoint")
    return getattr(endpoint, "__name__", "unmatched")


class RequestMetricsMiddleware(BaseHTTPMiddleware):
    ignored_paths: ClassVar[set[str]] = {"/_functional/metrics", "/_functional/health", "/health"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.ignored_paths:
            return await call_next(request)

        collectors = request.state.metrics_registry._names_to_collectors
        pending_gauge = collectors["http_requests_pending"].labels(request.method)

        start = time.perf_counter()
        with pending_gauge.track_inprogress():
            response = await call_next(request)

        endpoint = _endpoint_name(request)
        collectors["http_requests_latency_seconds"].labels(request.method, endpoint).observe(
            time.perf_counter() - start
        )
        collectors["http_responses"].labels(request.method, endpoint, response.status_code).inc()

        return response


class DeliveryQueueCollector(Collector):
    """Reports the size of the delivery queue per status at scrape time."""

    def __init__(self, store: FederationStore):
        self._store = store

    def collect(self) -> Iterator[GaugeMetricFamily]:
        family = GaugeMetricFamily(
            "federation_delivery_queue", "Delivery tasks by status", labels=["status"]
        )
        for status, count in self._store.count_deliveries_by_status().items():
            family.add_metric([status], count)
        yield family


class MetricsEndpoint(HTTPEndpoint):
    async def get(self, request: Request) -> PlainTextResponse:
        text = prometheus_client.generate_latest(request.state.metrics_registry)
        return PlainTextResponse(text, media_type=CONTENT_TYPE_LATEST)


def get_metrics_registry(registry: CollectorRegistry | None = None) -> CollectorRegistry:
    """Registry shared by the HTTP layer and the federation engine.

    The delivery worker lives in the server process, so metrics are
    collected in-process.
    """
    registry = registry or CollectorRegistry()

    Histogram(
        "http_requests_latency_seconds",
        "Request latency",
        ("method", "endpoint"),
        registry=registry,
    )
    Gauge(
        "http_requests_pending",
        "Currently pending requests",
        ("method",),
        registry=registry,
    )
    Counter(
        "http_responses",
        "Responses by status code",
        ("method", "endpoint", "status"),
        registry=registry,
    )

    return registry
