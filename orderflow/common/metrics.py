"""Prometheus metrics for the order service.

Metrics live on an `OrderMetrics` instance bound to its own registry, created
when the service starts and unregistered when it stops.
"""

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest
from starlette.responses import Response


class OrderMetrics:
    """Counters and histograms scoped to one service instance."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.orders_created_total = Counter(
            "orders_created_total",
            "Total order creation attempts by outcome",
            ["status"],
            registry=self.registry,
        )
        self.order_amount = Histogram(
            "order_amount",
            "Order amount distribution",
            ["currency"],
            buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000, 5000, 10000),
            registry=self.registry,
        )
        self.cache_hits_total = Counter(
            "cache_hits_total", "Total cache hits", ["cache_type"], registry=self.registry
        )
        self.cache_misses_total = Counter(
            "cache_misses_total", "Total cache misses", ["cache_type"], registry=self.registry
        )
        self.stage_failures_total = Counter(
            "order_stage_failures_total",
            "Pipeline failures by stage and error kind",
            ["stage", "kind"],
            registry=self.registry,
        )
        self.creation_seconds = Histogram(
            "order_creation_seconds", "End-to-end order creation latency seconds", registry=self.registry
        )
        self.intents_resumed_total = Counter(
            "order_intents_resumed_total",
            "Partially completed creations resumed",
            ["trigger"],
            registry=self.registry,
        )

    def cache_hit(self, cache_type: str) -> None:
        self.cache_hits_total.labels(cache_type=cache_type).inc()

    def cache_miss(self, cache_type: str) -> None:
        self.cache_misses_total.labels(cache_type=cache_type).inc()

    def close(self) -> None:
        """Unregister every collector so the registry can be discarded."""

        for collector in (
            self.orders_created_total,
            self.order_amount,
            self.cache_hits_total,
            self.cache_misses_total,
            self.stage_failures_total,
            self.creation_seconds,
            self.intents_resumed_total,
        ):
            self.registry.unregister(collector)


def metrics_response(metrics: OrderMetrics) -> Response:
    """Expose all metrics registered on the service registry in text format."""

    return Response(content=generate_latest(metrics.registry), media_type="text/plain")
