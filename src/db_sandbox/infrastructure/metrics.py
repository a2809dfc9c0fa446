"""Prometheus metrics for the database sandbox."""

from __future__ import annotations

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
    CollectorRegistry,
)


class MetricsRegistry:
    """Registry of all sandbox metrics."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """Initialize metrics registry.

        A private registry is created when none is given so that several
        sandboxes in one process never collide on metric names.
        """
        self._registry = registry or CollectorRegistry()

        # Container metrics
        self.container_operations_total = Counter(
            "sandbox_container_operations_total",
            "Total container operations",
            ["operation", "status"],  # create/start/stop/delete/clone/rename, success/error
            registry=self._registry,
        )

        self.container_startup_seconds = Histogram(
            "sandbox_container_startup_seconds",
            "Engine process startup latency in seconds",
            ["engine"],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self._registry,
        )

        self.containers_running = Gauge(
            "sandbox_containers_running",
            "Containers observed running at the last reconciliation",
            registry=self._registry,
        )

        self.process_kills_total = Counter(
            "sandbox_process_kills_total",
            "Processes terminated by the supervisor",
            ["mode"],  # graceful, forced, sweep
            registry=self._registry,
        )

        # Port metrics
        self.port_scans_total = Counter(
            "sandbox_port_scans_total",
            "Free-port searches",
            ["status"],  # found, exhausted
            registry=self._registry,
        )

        # Binary metrics
        self.binary_downloads_total = Counter(
            "sandbox_binary_downloads_total",
            "Binary download attempts",
            ["engine", "status"],  # success, not_found, timeout, failed, mismatch
            registry=self._registry,
        )

        self.binary_download_duration_seconds = Histogram(
            "sandbox_binary_download_duration_seconds",
            "Download, extract and verify duration in seconds",
            ["engine"],
            buckets=(1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
            registry=self._registry,
        )

        self.info = Info(
            "db_sandbox",
            "Database sandbox information",
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry


def setup_metrics(port: int | None = None, registry: CollectorRegistry | None = None) -> MetricsRegistry:
    """Create a metrics registry, optionally exposing it over HTTP."""
    metrics = MetricsRegistry(registry)

    from db_sandbox import __version__
    metrics.info.info({"version": __version__})

    if port is not None:
        start_http_server(port, registry=metrics.registry)
    return metrics
