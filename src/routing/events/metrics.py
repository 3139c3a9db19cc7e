"""Prometheus metrics for routing observability.

Metrics Defined:
- router_issues_routed_total: Counter of issues created/updated/skipped at
  a destination, by destination and outcome
- router_issues_failed_total: Counter of failed routings, by stage
- router_admission_decisions_total: Counter of admission decisions
- router_routing_duration_seconds: Histogram of end-to-end routing time

The MetricsEventEmitter integrates with the event emission system to
update metrics from routing events.

Source:
- src/routing/events/models.py (RoutingEvent, EventType)
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

from src.routing.events.emitter import EventEmitter
from src.routing.events.models import EventType, RoutingEvent


logger = logging.getLogger(__name__)


# Routing is bounded by one LLM call and a handful of API requests
DEFAULT_DURATION_BUCKETS = (
    0.1,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
    30.0,
    60.0,
    120.0,
)

# Events that conclude a routing attempt
TERMINAL_EVENTS = (
    EventType.ROUTED,
    EventType.DUPLICATE,
    EventType.QUEUED,
    EventType.BLOCKED,
    EventType.ERROR,
)


class RouterMetrics:
    """Container for all router Prometheus metrics.

    Attributes:
        registry: The Prometheus registry for these metrics.
        issues_routed_total: Counter for routed issues.
        issues_failed_total: Counter for failed routings.
        admission_decisions_total: Counter for admission decisions.
        routing_duration_seconds: Histogram for routing duration.

    Example:
        >>> metrics = RouterMetrics(registry=CollectorRegistry())
        >>> metrics.record_routed("org/repo", "created")
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize router metrics.

        Args:
            registry: Optional Prometheus registry. If None, uses the
                      default REGISTRY. Pass a custom registry for testing.
        """
        self.registry = registry or REGISTRY

        self.issues_routed_total = Counter(
            "router_issues_routed_total",
            "Total number of issues routed to a destination",
            labelnames=["destination", "outcome"],
            registry=self.registry,
        )

        self.issues_failed_total = Counter(
            "router_issues_failed_total",
            "Total number of issues whose routing failed",
            labelnames=["stage"],
            registry=self.registry,
        )

        self.admission_decisions_total = Counter(
            "router_admission_decisions_total",
            "Total number of admission decisions by processing decision",
            labelnames=["decision"],
            registry=self.registry,
        )

        self.routing_duration_seconds = Histogram(
            "router_routing_duration_seconds",
            "Time spent routing issues in seconds",
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

    def record_routed(self, destination: str, outcome: str) -> None:
        """Record that an issue reached its destination."""
        self.issues_routed_total.labels(destination=destination, outcome=outcome).inc()

    def record_failed(self, stage: str) -> None:
        """Record that routing failed at a stage."""
        self.issues_failed_total.labels(stage=stage).inc()

    def record_admission(self, decision: str) -> None:
        """Record an admission decision."""
        self.admission_decisions_total.labels(decision=decision).inc()

    def record_duration(self, duration_seconds: float) -> None:
        """Record the routing duration for an issue."""
        self.routing_duration_seconds.observe(duration_seconds)


# Global metrics instance for the default registry
_default_metrics: Optional[RouterMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> RouterMetrics:
    """Get or create the router metrics instance.

    Args:
        registry: Optional Prometheus registry. If None, returns the
                  global metrics instance for the default registry.

    Returns:
        RouterMetrics: The metrics instance.
    """
    global _default_metrics

    if registry is not None:
        return RouterMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = RouterMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate Prometheus metrics output in text format."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    - STAGE_TRANSITION out of admission_check: admission decision counter
    - ROUTED, DUPLICATE: routed counter by destination and outcome
    - ERROR: failed counter by stage
    - Every terminal event: duration histogram, when a duration is present

    Attributes:
        metrics: The RouterMetrics instance to update.
    """

    def __init__(
        self,
        metrics: Optional[RouterMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        if metrics is not None:
            self._metrics = metrics
        else:
            self._metrics = get_metrics(registry)

    @property
    def metrics(self) -> RouterMetrics:
        """Get the metrics instance."""
        return self._metrics

    def emit(self, event: RoutingEvent) -> None:
        """Update metrics based on the routing event.

        Args:
            event: The routing event to process.
        """
        try:
            details = event.details
            if event.event_type == EventType.STAGE_TRANSITION:
                if details.get("from_stage") == "admission_check" and details.get("decision"):
                    self._metrics.record_admission(str(details["decision"]))
            elif event.event_type in (EventType.ROUTED, EventType.DUPLICATE):
                self._metrics.record_routed(
                    destination=event.repository,
                    outcome=str(details.get("outcome", event.event_type.value)),
                )
            elif event.event_type == EventType.ERROR:
                self._metrics.record_failed(str(details.get("stage", "unknown")))

            duration = details.get("duration_seconds")
            if event.event_type in TERMINAL_EVENTS and duration is not None:
                self._metrics.record_duration(float(duration))
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={
                    "event_type": event.event_type.value,
                    "issue_id": event.issue_id,
                    "error": str(e),
                },
            )
