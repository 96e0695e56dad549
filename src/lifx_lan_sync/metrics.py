"""Prometheus metrics helpers."""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_REGISTRY = CollectorRegistry()

REQUEST_LATENCY = Histogram(
    "lifx_api_request_duration_seconds",
    "Time spent processing API requests",
    ["method", "path", "status"],
    registry=_REGISTRY,
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5],
)
REQUEST_COUNT = Counter(
    "lifx_api_requests_total",
    "HTTP requests processed by the API",
    ["method", "path", "status"],
    registry=_REGISTRY,
)
ACTIVE_DEVICES = Gauge(
    "lifx_active_devices",
    "Bulbs currently registered",
    registry=_REGISTRY,
)
DISCOVERY_EVENTS = Counter(
    "lifx_discovery_events_total",
    "Discovery and loss notifications handled",
    ["event"],
    registry=_REGISTRY,
)
UPDATE_REQUESTS = Counter(
    "lifx_update_requests_total",
    "Update requests by coalescing outcome",
    ["update_class", "outcome"],
    registry=_REGISTRY,
)
UPDATE_CYCLES = Counter(
    "lifx_update_cycles_total",
    "Update cycles executed",
    ["update_class", "result"],
    registry=_REGISTRY,
)
DISPATCH_FAILURES = Counter(
    "lifx_dispatch_failures_total",
    "Per-device set-color calls that failed",
    ["update_class"],
    registry=_REGISTRY,
)
DISPATCH_DURATION = Histogram(
    "lifx_dispatch_duration_seconds",
    "Wall-clock time of each paced per-device dispatch",
    ["update_class"],
    registry=_REGISTRY,
    buckets=[0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 1, 2, 5],
)
RESTORES = Counter(
    "lifx_restores_total",
    "Bulbs restored to their captured state",
    ["result"],
    registry=_REGISTRY,
)


def get_registry() -> CollectorRegistry:
    """Return the registry holding the service metrics."""

    return _REGISTRY


def latest_metrics() -> bytes:
    """Render the latest metrics payload for scraping."""

    return generate_latest(_REGISTRY)


def observe_request(method: str, path: str, status: int, duration_seconds: float) -> None:
    """Record API request metrics."""

    status_str = str(status)
    REQUEST_COUNT.labels(method=method, path=path, status=status_str).inc()
    REQUEST_LATENCY.labels(method=method, path=path, status=status_str).observe(duration_seconds)


def set_active_devices(count: int) -> None:
    """Set the number of registered bulbs."""

    ACTIVE_DEVICES.set(count)


def record_discovery_event(event: str) -> None:
    """Record a handled discovery event (discovered, lost, failed, ignored)."""

    DISCOVERY_EVENTS.labels(event=event).inc()


def record_update_request(update_class: str, outcome: str) -> None:
    """Record how an update request was handled by its coalescer."""

    UPDATE_REQUESTS.labels(update_class=update_class, outcome=outcome).inc()


def record_update_cycle(update_class: str, result: str) -> None:
    """Record the result of an update cycle."""

    UPDATE_CYCLES.labels(update_class=update_class, result=result).inc()


def record_dispatch_failure(update_class: str) -> None:
    """Record a failed per-device dispatch."""

    DISPATCH_FAILURES.labels(update_class=update_class).inc()


def observe_dispatch_duration(update_class: str, duration_seconds: float) -> None:
    """Record how long a paced dispatch took."""

    DISPATCH_DURATION.labels(update_class=update_class).observe(duration_seconds)


def record_restore(result: str) -> None:
    """Record the outcome of restoring one bulb."""

    RESTORES.labels(result=result).inc()


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST
