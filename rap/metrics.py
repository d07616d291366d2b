# rap/metrics.py
"""
Prometheus metrics for the federation server.

Each FederationServer owns its own CollectorRegistry, so several servers
can share a process. Queue and resolver figures are read at scrape time.
"""

from typing import Iterator, Tuple

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric

from .delivery import DeliveryQueue
from .resolver import PeerResolver

PREFIX = "rap_server"


class _StateCollector:
    """Exposes DeliveryQueue.stats() and resolver lookups."""

    def __init__(self, queue: DeliveryQueue, resolver: PeerResolver):
        self.queue = queue
        self.resolver = resolver

    def collect(self) -> Iterator[Metric]:
        stats = self.queue.stats()

        messages = GaugeMetricFamily(
            f"{PREFIX}_delivery_messages",
            "Messages held by the delivery queue",
            labels=["state"],
        )
        for state in ("pending", "in_flight", "dead"):
            messages.add_metric([state], stats[state])
        yield messages

        destinations = GaugeMetricFamily(
            f"{PREFIX}_delivery_destinations",
            "Destinations with pending messages",
        )
        destinations.add_metric([], stats["destinations"])
        yield destinations

        delivered = CounterMetricFamily(f"{PREFIX}_delivery_delivered", "Messages delivered since start")
        delivered.add_metric([], stats["delivered"])
        yield delivered

        lookups = CounterMetricFamily(f"{PREFIX}_resolver_lookups", "Remote actor fetches started")
        lookups.add_metric([], self.resolver.lookups)
        yield lookups


class ServerMetrics:
    """
    Request counters and latency plus a scrape-time view of the services.

    Usage:
        metrics = ServerMetrics(queue, resolver)
        metrics.observe_request("POST", "/inbox", 202, 0.012)
        body, content_type = metrics.render()
    """

    def __init__(self, queue: DeliveryQueue, resolver: PeerResolver):
        self.registry = CollectorRegistry()
        self.requests = Counter(
            f"{PREFIX}_http_requests",
            "HTTP requests handled",
            ["method", "route", "status"],
            registry=self.registry,
        )
        self.latency = Histogram(
            f"{PREFIX}_http_request_duration_seconds",
            "Time spent handling HTTP requests",
            ["method", "route"],
            registry=self.registry,
        )
        self.registry.register(_StateCollector(queue, resolver))

    def observe_request(self, method: str, route: str, status: int, elapsed: float):
        self.requests.labels(method=method, route=route, status=str(status)).inc()
        self.latency.labels(method=method, route=route).observe(elapsed)

    def render(self) -> Tuple[bytes, str]:
        """Exposition text and its content type."""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
